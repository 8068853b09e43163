"""
Document Store
==============
Holds document bytes between upload, processing and download.

Documents live in memory and, when a storage directory is configured, are
mirrored to disk so they survive a restart:

    {storage_dir}/
    ├── {document_id}.pdf
    └── {document_id}.json      # filename, timestamps, source job

Bytes are stored as uploaded. Damaged files are accepted on purpose: the
repair engine needs them. Parsing happens later, under the document lock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import DocumentNotFound

logger = logging.getLogger(__name__)


@dataclass
class StoredDocument:
    id: str
    filename: str
    data: bytes = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    source_job: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    def info(self) -> dict:
        return {
            "fileId": self.id,
            "filename": self.filename,
            "size": self.size,
            "sha256": self.sha256,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "sourceJob": self.source_job,
        }


class DocumentStore:
    """Thread-safe id → bytes map with optional disk mirroring."""

    def __init__(self, storage_dir: Optional[str] = None):
        self._docs: dict[str, StoredDocument] = {}
        self._lock = threading.Lock()
        self.storage_dir = Path(storage_dir) if storage_dir else None
        if self.storage_dir:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self._load_existing()
            logger.info(f"Document store initialized: {self.storage_dir}")

    def _load_existing(self):
        for path in sorted(self.storage_dir.glob("*.pdf")):
            doc_id = path.stem
            doc = StoredDocument(
                id=doc_id,
                filename=path.name,
                data=path.read_bytes(),
                created_at=datetime.fromtimestamp(path.stat().st_mtime, timezone.utc),
            )
            meta_path = self._meta_path(doc_id)
            if meta_path.exists():
                try:
                    meta = json.loads(meta_path.read_text(encoding="utf-8"))
                    doc.filename = meta["filename"]
                    doc.created_at = datetime.fromisoformat(meta["createdAt"])
                    if meta.get("updatedAt"):
                        doc.updated_at = datetime.fromisoformat(meta["updatedAt"])
                    doc.source_job = meta.get("sourceJob")
                except (ValueError, KeyError) as e:
                    logger.warning(f"Ignoring unreadable metadata for {doc_id}: {e}")
            self._docs[doc_id] = doc
        if self._docs:
            logger.info(f"Loaded {len(self._docs)} stored documents")

    def _path(self, doc_id: str) -> Path:
        return self.storage_dir / f"{doc_id}.pdf"

    def _meta_path(self, doc_id: str) -> Path:
        return self.storage_dir / f"{doc_id}.json"

    def _write(self, doc: StoredDocument):
        if self.storage_dir:
            self._path(doc.id).write_bytes(doc.data)
            meta = {k: v for k, v in doc.info().items() if k not in ("size", "sha256")}
            self._meta_path(doc.id).write_text(json.dumps(meta, indent=2), encoding="utf-8")

    # ─── Public API ───────────────────────────────────────────────────────

    def put(self, data: bytes, filename: str = "document.pdf",
            source_job: Optional[str] = None) -> StoredDocument:
        doc = StoredDocument(
            id=str(uuid.uuid4()),
            filename=sanitize_filename(filename),
            data=bytes(data),
            source_job=source_job,
        )
        with self._lock:
            self._docs[doc.id] = doc
            self._write(doc)
        logger.info(f"Stored document {doc.id} ({doc.filename}, {doc.size} bytes)")
        return doc

    def get(self, doc_id: str) -> StoredDocument:
        with self._lock:
            doc = self._docs.get(doc_id)
        if doc is None:
            raise DocumentNotFound(f"Document {doc_id} not found")
        return doc

    def exists(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._docs

    def read(self, doc_id: str) -> bytes:
        return self.get(doc_id).data

    def replace(self, doc_id: str, data: bytes, source_job: Optional[str] = None):
        """Overwrite a document in place. Caller holds its write lock."""
        with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None:
                raise DocumentNotFound(f"Document {doc_id} not found")
            doc.data = bytes(data)
            doc.updated_at = datetime.now(timezone.utc)
            doc.source_job = source_job
            self._write(doc)
        logger.info(f"Document {doc_id} updated by job {source_job} ({len(data)} bytes)")

    def delete(self, doc_id: str) -> bool:
        with self._lock:
            doc = self._docs.pop(doc_id, None)
            if doc is not None and self.storage_dir:
                self._path(doc_id).unlink(missing_ok=True)
                self._meta_path(doc_id).unlink(missing_ok=True)
        if doc is not None:
            logger.info(f"Deleted document: {doc_id}")
        return doc is not None

    def list_documents(self) -> list[StoredDocument]:
        with self._lock:
            return list(self._docs.values())


# ─── Helpers ──────────────────────────────────────────────────────────────────


def sanitize_filename(name: str) -> str:
    """Sanitize a name for filesystem use."""
    stem = Path(name or "document.pdf").name
    cleaned = "".join(
        c if c.isalnum() or c in "-_. " else "_"
        for c in stem
    ).strip().replace(" ", "_")[:100]
    return cleaned or "document.pdf"
