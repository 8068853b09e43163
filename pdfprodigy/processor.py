"""
Job Processor
=============
Executes one job end to end on a worker thread:

    lock → read bytes → load → engine → serialize → store → unlock

Mutating jobs hold the document's write lock for the whole run, so bytes
are read after the lock is taken and written back before it is released.
Compare jobs take read locks only long enough to snapshot both documents.

Nothing is written back until the engine has finished and a last
cancellation checkpoint has passed, so a cancelled or failed job leaves
the stored document exactly as it was.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from typing import Callable

from .audit import AuditLog
from .compare import ComparisonEngine, render_highlights
from .document import Document
from .locking import LockRegistry
from .models import ApiModel, Job, JobKind, PageSource
from .ocr import OcrEngine
from .redaction import RedactionEngine
from .repair import RepairEngine
from .scanner import Ruleset
from .settings import SettingsModel
from .storage import DocumentStore
from .transforms import add_page_numbers, crop, protect

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], None]

# Result field that receives the serialized size of the output
OUTPUT_SIZE_FIELD = {
    JobKind.REDACT: "redacted_size",
    JobKind.REPAIR: "repaired_size",
    JobKind.PROTECT: "protected_size",
    JobKind.PAGE_NUMBER: "numbered_size",
    JobKind.CROP: "cropped_size",
}


class JobProcessor:
    """Runs jobs against the store. Safe to share between workers."""

    def __init__(self, store: DocumentStore, locks: LockRegistry, audit: AuditLog):
        self.store = store
        self.locks = locks
        self.audit = audit

    def execute(self, job: Job, settings: SettingsModel, checkpoint: Checkpoint) -> ApiModel:
        logger.info(f"Job {job.id}: {job.kind.value} on document {job.document_id}")
        if job.kind == JobKind.COMPARE:
            return self._compare(job, settings, checkpoint)
        if job.kind == JobKind.REPAIR:
            return self._repair(job, settings, checkpoint)
        return self._transform(job, settings, checkpoint)

    # ─── Mutating jobs ────────────────────────────────────────────────────

    def _repair(self, job: Job, settings, checkpoint: Checkpoint) -> ApiModel:
        # Repair works on raw bytes: the input may not load as a Document
        with self.locks.write(job.document_id, job.id):
            data = self.store.read(job.document_id)
            result, output = RepairEngine(self.audit).repair(data, settings, job.id, checkpoint)
            checkpoint()
            self.store.replace(job.document_id, output, source_job=job.id)
        result.output_document_id = job.document_id
        return result

    def _transform(self, job: Job, settings, checkpoint: Checkpoint) -> ApiModel:
        with self.locks.write(job.document_id, job.id):
            data = self.store.read(job.document_id)
            with Document.load(data) as doc:
                result, changed = self._run_engine(job, doc, settings, checkpoint)
                checkpoint()
                output = doc.serialize() if changed else data
            if changed:
                self.store.replace(job.document_id, output, source_job=job.id)

        if hasattr(result, "original_size"):
            result.original_size = len(data)
        size_field = OUTPUT_SIZE_FIELD.get(job.kind)
        if size_field:
            setattr(result, size_field, len(output))
        result.output_document_id = job.document_id
        return result

    def _run_engine(self, job: Job, doc: Document, settings,
                    checkpoint: Checkpoint) -> tuple[ApiModel, bool]:
        """Returns the result and whether the document was modified."""
        if job.kind == JobKind.REDACT:
            ruleset = Ruleset.from_settings(settings)
            engine = RedactionEngine(self.audit)
            return engine.redact(doc, settings, ruleset, job.id, checkpoint), True

        if job.kind == JobKind.OCR:
            result = OcrEngine(settings).run(doc, checkpoint)
            changed = result.output_format == "searchable_pdf" and any(
                p.source == PageSource.OCR and p.words for p in result.pages
            )
            return result, changed

        if job.kind == JobKind.PROTECT:
            return protect(doc, settings), True

        if job.kind == JobKind.PAGE_NUMBER:
            result = add_page_numbers(doc, settings, checkpoint)
            return result, result.pages_numbered > 0

        if job.kind == JobKind.CROP:
            result = crop(doc, settings, checkpoint)
            return result, result.pages_processed > 0

        raise ValueError(f"No engine for job kind {job.kind.value}")

    # ─── Read-only jobs ───────────────────────────────────────────────────

    def _compare(self, job: Job, settings, checkpoint: Checkpoint) -> ApiModel:
        with ExitStack() as stack:
            stack.enter_context(self.locks.read(job.document_id))
            stack.enter_context(self.locks.read(job.compare_document_id))
            data_a = self.store.read(job.document_id)
            data_b = self.store.read(job.compare_document_id)

        with Document.load(data_a) as doc_a, Document.load(data_b) as doc_b:
            result = ComparisonEngine(settings).run(doc_a, doc_b, checkpoint)
        checkpoint()

        if settings.output_format != "summary_only":
            highlighted = render_highlights(data_b, result.records, settings)
            source = self.store.get(job.compare_document_id)
            stored = self.store.put(
                highlighted,
                filename=f"compared_{source.filename}",
                source_job=job.id,
            )
            result.output_document_id = stored.id
        return result
