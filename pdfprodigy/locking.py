"""
Document Locks
==============
Per-document readers/writer locks.

Writers (mutating jobs) fail fast with ``DocumentBusy`` when another writer
holds the document, then wait a bounded time for active readers to drain.
Readers (compare jobs) queue behind a writer for up to ``timeout`` seconds.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Optional

from .errors import DocumentBusy

logger = logging.getLogger(__name__)


class DocumentLock:
    """Readers/writer lock for a single document."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        self._cond = threading.Condition()
        self._readers = 0
        self._writer: Optional[str] = None

    @property
    def writer(self) -> Optional[str]:
        return self._writer

    @property
    def readers(self) -> int:
        return self._readers

    def acquire_write(self, owner: str, timeout: float):
        with self._cond:
            if self._writer is not None and self._writer != owner:
                raise DocumentBusy(
                    f"Document {self.document_id} is being modified by job {self._writer}",
                    detail={"documentId": self.document_id, "heldBy": self._writer},
                )
            self._writer = owner
            deadline = time.monotonic() + timeout
            while self._readers > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._writer = None
                    self._cond.notify_all()
                    raise DocumentBusy(
                        f"Document {self.document_id} is still being read",
                        detail={"documentId": self.document_id},
                    )
                self._cond.wait(remaining)

    def release_write(self, owner: str):
        with self._cond:
            if self._writer == owner:
                self._writer = None
                self._cond.notify_all()

    def acquire_read(self, timeout: float):
        with self._cond:
            deadline = time.monotonic() + timeout
            while self._writer is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DocumentBusy(
                        f"Document {self.document_id} is being modified by job {self._writer}",
                        detail={"documentId": self.document_id, "heldBy": self._writer},
                    )
                self._cond.wait(remaining)
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers = max(0, self._readers - 1)
            self._cond.notify_all()


class LockRegistry:
    """Hands out one DocumentLock per document id."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._locks: dict[str, DocumentLock] = {}
        self._lock = threading.Lock()

    def get(self, document_id: str) -> DocumentLock:
        with self._lock:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = self._locks[document_id] = DocumentLock(document_id)
            return lock

    def discard(self, document_id: str):
        with self._lock:
            lock = self._locks.get(document_id)
            if lock is not None and lock.writer is None and lock.readers == 0:
                del self._locks[document_id]

    @contextmanager
    def write(self, document_id: str, owner: str):
        lock = self.get(document_id)
        lock.acquire_write(owner, self.timeout)
        logger.debug(f"Job {owner} holds write lock on {document_id}")
        try:
            yield lock
        finally:
            lock.release_write(owner)

    @contextmanager
    def read(self, document_id: str):
        lock = self.get(document_id)
        lock.acquire_read(self.timeout)
        try:
            yield lock
        finally:
            lock.release_read()
