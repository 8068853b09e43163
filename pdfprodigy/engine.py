"""
PDF Prodigy Engine
==================
Facade that wires the document store, locks, audit log, processor and
worker pool together. The HTTP server and the CLI both talk to this.

Usage:
    with ProdigyEngine(EngineConfig(workers=2)) as engine:
        doc = engine.upload(pdf_bytes, "contract.pdf")
        job_id = engine.submit("redact", doc.id, {"autoDetectionTypes": {"ssn": True}})
        job = engine.wait(job_id)
        redacted = engine.download(doc.id)

Architecture:
    upload → DocumentStore ─┐
    submit → JobQueue → worker → JobProcessor → engines → DocumentStore
                                      │
                                  LockRegistry, AuditLog → SQLite archive
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from . import __version__
from . import database as db
from .audit import AuditLog
from .config import EngineConfig, setup_logging
from .errors import CorruptDocument, DocumentTooLarge
from .jobs import JobQueue
from .locking import LockRegistry
from .models import AuditEntry, Job, JobKind, JobState
from .processor import JobProcessor
from .storage import DocumentStore, StoredDocument

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ["pdf"]

# A PDF header may sit behind some leading junk; repair strips it
HEADER_SEARCH_BYTES = 1024


class ProdigyEngine:
    """
    Main job engine.

    Thread-safe: any number of callers may upload, submit and poll while
    the worker pool runs jobs in the background.
    """

    def __init__(self, config: Optional[EngineConfig] = None, autostart: bool = True):
        self.config = config or EngineConfig()
        setup_logging(self.config.log_level, self.config.log_file)

        if self.config.db_path:
            db.init_db(self.config.db_path)

        self.store = DocumentStore(self.config.storage_dir)
        self.locks = LockRegistry(timeout=self.config.lock_timeout_seconds)
        self.audit = AuditLog()
        self.processor = JobProcessor(self.store, self.locks, self.audit)
        self.queue = JobQueue(self.processor, self.store, self.audit, self.config)

        if autostart:
            self.start()

    def start(self):
        self.queue.start()

    def shutdown(self, wait: bool = True):
        self.queue.shutdown(wait=wait)

    def __enter__(self) -> "ProdigyEngine":
        return self

    def __exit__(self, *exc):
        self.shutdown()

    # ─── Documents ────────────────────────────────────────────────────────

    def upload(self, data: bytes, filename: str = "document.pdf") -> StoredDocument:
        """
        Store raw bytes and return the stored document.

        Damaged PDFs are accepted so they can be repaired; bytes without a
        PDF header anywhere near the start are not.
        """
        limit = self.config.max_upload_mb * 1024 * 1024
        if len(data) > limit:
            raise DocumentTooLarge(
                f"Upload is {len(data)} bytes; the limit is {self.config.max_upload_mb} MB",
                detail={"size": len(data), "limit": limit},
            )
        if b"%PDF-" not in data[:HEADER_SEARCH_BYTES]:
            raise CorruptDocument(f"{filename} is not a PDF file")
        return self.store.put(data, filename)

    def download(self, document_id: str) -> bytes:
        return self.store.read(document_id)

    def document(self, document_id: str) -> StoredDocument:
        return self.store.get(document_id)

    def delete_document(self, document_id: str) -> bool:
        return self.store.delete(document_id)

    def documents(self) -> list[StoredDocument]:
        return self.store.list_documents()

    @staticmethod
    def validate_filename(filename: str) -> dict:
        suffix = Path(filename).suffix.lower().lstrip(".")
        valid = suffix in SUPPORTED_FORMATS
        return {
            "filename": filename,
            "isValid": valid,
            "supportedFormats": SUPPORTED_FORMATS,
            "message": "File format is supported" if valid
            else f"Unsupported format '{suffix or 'none'}'; expected a PDF",
        }

    # ─── Jobs ─────────────────────────────────────────────────────────────

    def submit(
        self,
        kind: JobKind | str,
        document_id: str,
        settings: Optional[dict[str, Any]] = None,
        compare_document_id: Optional[str] = None,
    ) -> str:
        return self.queue.submit(kind, document_id, settings, compare_document_id)

    def status(self, job_id: str) -> Job:
        return self.queue.get_status(job_id)

    def cancel(self, job_id: str) -> Job:
        return self.queue.cancel(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        return self.queue.wait(job_id, timeout)

    def audit_entries(self, job_id: str) -> list[AuditEntry]:
        return self.queue.audit_entries(job_id)

    def jobs(self, state: Optional[JobState] = None) -> list[Job]:
        return self.queue.list_jobs(state)

    def archived_jobs(self, document_id: Optional[str] = None) -> list[dict]:
        if not self.config.db_path:
            return []
        return db.list_archived_jobs(document_id, self.config.db_path)

    # ─── Introspection ────────────────────────────────────────────────────

    def health(self) -> dict:
        stats = self.queue.stats()
        return {
            "status": "healthy" if self.queue.running else "stopped",
            "service": "pdfprodigy",
            "version": __version__,
            "workers": self.config.workers,
            "activeJobs": stats["queued"] + stats["running"],
            "totalJobs": stats["total"],
            "documents": len(self.store.list_documents()),
        }

    @staticmethod
    def info() -> dict:
        return {
            "version": __version__,
            "engine": "PyMuPDF",
            "jobKinds": [k.value for k in JobKind],
            "capabilities": [
                "redaction",
                "structural_repair",
                "comparison",
                "ocr",
                "protection",
                "page_numbering",
                "cropping",
            ],
            "supportedFormats": SUPPORTED_FORMATS,
        }
