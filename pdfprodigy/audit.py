"""
Audit Log
=========
Append-only record of what each redact/repair job did to a document.
Entries are frozen models; nothing here updates or deletes one.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict

from .models import AuditAction, AuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Thread-safe, per-job append-only list of AuditEntry."""

    def __init__(self):
        self._entries: dict[str, list[AuditEntry]] = defaultdict(list)
        self._lock = threading.Lock()

    def append(self, job_id: str, page: int, action: AuditAction, detail: str = "") -> AuditEntry:
        entry = AuditEntry(job_id=job_id, page=page, action=action, detail=detail)
        with self._lock:
            self._entries[job_id].append(entry)
        logger.debug(f"Audit [{job_id}] page {page} {action.value}: {detail}")
        return entry

    def entries(self, job_id: str) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries.get(job_id, ()))

    def pop(self, job_id: str) -> list[AuditEntry]:
        """Remove a job's entries from memory, for archiving."""
        with self._lock:
            return self._entries.pop(job_id, [])

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._entries.values())


def mask_excerpt(text: str, visible: int = 2) -> str:
    """Keep the last few characters of a match: '123-45-6789' -> '*********89'."""
    text = text.strip()
    if len(text) <= visible:
        return "*" * len(text)
    return "*" * (len(text) - visible) + text[-visible:]
