"""
Tests for the job queue, the worker pool, the processor and the archive.
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import fitz  # PyMuPDF
import pytest

from pdfprodigy import database as db
from pdfprodigy.audit import AuditLog
from pdfprodigy.config import EngineConfig
from pdfprodigy.document import Document
from pdfprodigy.engine import ProdigyEngine
from pdfprodigy.errors import (
    CorruptDocument,
    DocumentBusy,
    DocumentNotFound,
    DocumentTooLarge,
    InvalidPattern,
    InvalidSettings,
    JobNotFound,
    JobTimeout,
    NoAuditTrail,
)
from pdfprodigy.jobs import CancellationToken, JobQueue
from pdfprodigy.locking import LockRegistry
from pdfprodigy.models import AuditAction, AuditEntry, Job, JobKind, JobState, OcrResult, utcnow
from pdfprodigy.storage import DocumentStore

from .conftest import make_pdf

WAIT = 30


class ScriptedProcessor:
    """Stands in for JobProcessor: runs one scripted action per job, in order."""

    def __init__(self, *actions):
        self.locks = LockRegistry()
        self.actions = list(actions)
        self.seen: list[str] = []

    def execute(self, job, settings, checkpoint):
        self.seen.append(job.id)
        return self.actions.pop(0)(checkpoint)


def succeed(checkpoint):
    return OcrResult()


def slow(started: threading.Event):
    def action(checkpoint):
        started.set()
        for _ in range(500):
            checkpoint()
            time.sleep(0.01)
        return OcrResult()
    return action


@pytest.fixture
def scripted():
    """Build a started single-worker queue around scripted actions."""
    queues = []

    def build(*actions, **config):
        store = DocumentStore()
        processor = ScriptedProcessor(*actions)
        queue = JobQueue(processor, store, AuditLog(), EngineConfig(workers=1, **config))
        queue.start()
        queues.append(queue)
        return queue, store

    yield build
    for queue in queues:
        queue.shutdown(timeout=10)


def new_doc(store: DocumentStore) -> str:
    return store.put(make_pdf([["scripted"]]), "scripted.pdf").id


# ═══════════════════════════════════════════════════════════════════════════════
# QUEUE
# ═══════════════════════════════════════════════════════════════════════════════


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        token.checkpoint()
        token.cancel("timeout")
        token.cancel("cancelled")
        assert token.cancelled
        assert token.reason == "timeout"


class TestJobQueue:
    """Test scheduling, cancellation and failure handling with scripted work."""

    def test_fifo_order(self, scripted):
        gate = threading.Event()

        def blocked(checkpoint):
            gate.wait(WAIT)
            return OcrResult()

        queue, store = scripted(blocked, succeed, succeed)
        ids = [queue.submit("ocr", new_doc(store)) for _ in range(3)]
        assert queue.get_status(ids[2]).state == JobState.QUEUED
        gate.set()
        for job_id in ids:
            assert queue.wait(job_id, WAIT).state == JobState.SUCCEEDED
        assert queue.processor.seen == ids

    def test_succeeded_job_has_result_and_timing(self, scripted):
        queue, store = scripted(succeed)
        job = queue.wait(queue.submit("ocr", new_doc(store)), WAIT)
        assert job.state == JobState.SUCCEEDED
        assert job.result["outputFormat"] == "searchable_pdf"
        assert job.error is None
        assert job.started_at <= job.completed_at
        assert job.duration is not None

    def test_cancel_running_job(self, scripted):
        started = threading.Event()
        queue, store = scripted(slow(started))
        job_id = queue.submit("ocr", new_doc(store))
        assert started.wait(WAIT)

        snapshot = queue.cancel(job_id)
        assert snapshot.state == JobState.RUNNING
        job = queue.wait(job_id, WAIT)
        assert job.state == JobState.CANCELLED
        assert job.result is None

    def test_cancel_terminal_job_is_noop(self, scripted):
        queue, store = scripted(succeed)
        job_id = queue.submit("ocr", new_doc(store))
        queue.wait(job_id, WAIT)
        assert queue.cancel(job_id).state == JobState.SUCCEEDED

    def test_timeout(self, scripted):
        started = threading.Event()
        queue, store = scripted(slow(started), job_timeouts={"ocr": 0.05})
        job = queue.wait(queue.submit("ocr", new_doc(store)), WAIT)
        assert job.state == JobState.FAILED
        assert job.error.kind == JobTimeout.kind
        assert job.error.message == "Job exceeded its 0.05s time limit"

    def test_crash_does_not_kill_worker(self, scripted):
        def crash(checkpoint):
            raise ValueError("boom")

        queue, store = scripted(crash, succeed)
        failed = queue.wait(queue.submit("ocr", new_doc(store)), WAIT)
        assert failed.state == JobState.FAILED
        assert failed.error.kind == "Internal"
        assert failed.error.message == "boom"

        # Same single worker picks up the next job
        ok = queue.wait(queue.submit("ocr", new_doc(store)), WAIT)
        assert ok.state == JobState.SUCCEEDED

    def test_claim_released_after_finish(self, scripted):
        queue, store = scripted(succeed, succeed)
        doc_id = new_doc(store)
        queue.wait(queue.submit("ocr", doc_id), WAIT)
        second = queue.submit("ocr", doc_id)
        assert queue.wait(second, WAIT).state == JobState.SUCCEEDED

    def test_shutdown_cancels_queued(self, scripted):
        started = threading.Event()
        queue, store = scripted(slow(started), succeed)
        running = queue.submit("ocr", new_doc(store))
        assert started.wait(WAIT)
        queued = queue.submit("ocr", new_doc(store))

        queue.shutdown(wait=False)
        assert queue.get_status(queued).state == JobState.CANCELLED
        assert not queue.running

        queue.cancel(running)
        assert queue.wait(running, WAIT).state == JobState.CANCELLED

    def test_unknown_job(self, scripted):
        queue, _ = scripted()
        with pytest.raises(JobNotFound):
            queue.get_status("missing")
        with pytest.raises(JobNotFound):
            queue.cancel("missing")

    def test_stats(self, scripted):
        queue, store = scripted(succeed)
        queue.wait(queue.submit("ocr", new_doc(store)), WAIT)
        stats = queue.stats()
        assert stats["succeeded"] == 1
        assert stats["total"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═══════════════════════════════════════════════════════════════════════════════


class TestSubmission:
    """Test validation performed before a job is queued."""

    @pytest.fixture
    def idle_engine(self):
        eng = ProdigyEngine(EngineConfig(workers=1, log_level="WARNING"), autostart=False)
        yield eng
        eng.shutdown()

    def test_unknown_kind(self, idle_engine, text_pdf):
        doc = idle_engine.upload(text_pdf, "a.pdf")
        with pytest.raises(InvalidSettings) as exc:
            idle_engine.submit("shred", doc.id)
        assert "redact" in exc.value.detail["allowed"]

    def test_unknown_option(self, idle_engine, text_pdf):
        doc = idle_engine.upload(text_pdf, "a.pdf")
        with pytest.raises(InvalidSettings):
            idle_engine.submit("redact", doc.id, {"shredAfter": True})

    def test_bad_pattern(self, idle_engine, text_pdf):
        doc = idle_engine.upload(text_pdf, "a.pdf")
        with pytest.raises(InvalidPattern):
            idle_engine.submit("redact", doc.id, {
                "redactionMode": "pattern", "customPatterns": ["(unclosed"],
            })

    def test_missing_documents(self, idle_engine, text_pdf):
        with pytest.raises(DocumentNotFound):
            idle_engine.submit("repair", "missing")
        doc = idle_engine.upload(text_pdf, "a.pdf")
        with pytest.raises(DocumentNotFound):
            idle_engine.submit("compare", doc.id, {}, "missing")
        with pytest.raises(InvalidSettings):
            idle_engine.submit("compare", doc.id)

    def test_second_mutating_job_is_busy(self, idle_engine, text_pdf):
        doc = idle_engine.upload(text_pdf, "a.pdf")
        other = idle_engine.upload(text_pdf, "b.pdf")
        first = idle_engine.submit("redact", doc.id)
        with pytest.raises(DocumentBusy) as exc:
            idle_engine.submit("crop", doc.id)
        assert exc.value.detail["heldBy"] == first

        # Compare does not claim
        idle_engine.submit("compare", doc.id, {}, other.id)

        # Cancelling the queued job releases the claim
        assert idle_engine.cancel(first).state == JobState.CANCELLED
        idle_engine.submit("crop", doc.id)

    def test_upload_checks(self, text_pdf):
        eng = ProdigyEngine(EngineConfig(workers=1, max_upload_mb=0), autostart=False)
        with pytest.raises(DocumentTooLarge):
            eng.upload(text_pdf, "a.pdf")

        eng = ProdigyEngine(EngineConfig(workers=1), autostart=False)
        with pytest.raises(CorruptDocument):
            eng.upload(b"hello world", "a.pdf")
        # Damaged but recognizable PDFs are accepted for repair
        assert eng.upload(b"junk" + text_pdf, "a.pdf").id

    def test_validate_filename(self):
        assert ProdigyEngine.validate_filename("report.PDF")["isValid"]
        result = ProdigyEngine.validate_filename("report.docx")
        assert not result["isValid"]
        assert "docx" in result["message"]


# ═══════════════════════════════════════════════════════════════════════════════
# END TO END
# ═══════════════════════════════════════════════════════════════════════════════


class TestEngineJobs:
    """Run every job kind through the real processor."""

    def test_redact(self, engine, ssn_pdf):
        doc = engine.upload(ssn_pdf, "personnel.pdf")
        job = engine.wait(engine.submit("redact", doc.id), WAIT)

        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["totalRedactions"] == 3
        assert job.result["outputDocumentId"] == doc.id
        assert job.result["originalSize"] == len(ssn_pdf)
        assert job.result["redactedSize"] > 0

        with Document.load(engine.download(doc.id)) as redacted:
            assert "123-45-6789" not in redacted.page_text(1)
        assert engine.document(doc.id).info()["sourceJob"] == job.id
        assert len(engine.audit_entries(job.id)) == 3

    def test_failed_job_leaves_document(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job = engine.wait(engine.submit("redact", doc.id, {
            "redactionMode": "manual",
            "manualRegions": [{"page": 9, "x": 0, "y": 0, "width": 10, "height": 10}],
        }), WAIT)

        assert job.state == JobState.FAILED
        assert job.error.kind == "PageIndexOutOfRange"
        assert engine.download(doc.id) == text_pdf

    def test_corrupt_input_fails_job(self, engine, text_pdf):
        doc = engine.upload(b"%PDF-1.7\nnot really a document\n", "broken.pdf")
        job = engine.wait(engine.submit("crop", doc.id), WAIT)
        assert job.state == JobState.FAILED
        assert job.error.kind == "CorruptDocument"

    def test_repair(self, engine, missing_xref_pdf):
        doc = engine.upload(missing_xref_pdf, "broken.pdf")
        job = engine.wait(engine.submit("repair", doc.id), WAIT)
        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["status"] == "repaired"
        assert job.result["healthScore"] == 100
        actions = [e.action for e in engine.audit_entries(job.id)]
        assert AuditAction.DETECTED in actions
        assert AuditAction.REPAIRED in actions

    def test_compare(self, engine, compare_pair):
        original, revised = compare_pair
        a = engine.upload(original, "v1.pdf")
        b = engine.upload(revised, "v2.pdf")
        job = engine.wait(engine.submit("compare", a.id, {}, b.id), WAIT)

        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["totalChanges"] == 1
        output_id = job.result["outputDocumentId"]
        assert output_id not in (a.id, b.id)
        assert engine.document(output_id).filename == "compared_v2.pdf"
        # Inputs are untouched
        assert engine.download(a.id) == original
        assert engine.download(b.id) == revised
        with pytest.raises(NoAuditTrail):
            engine.audit_entries(job.id)

    def test_compare_summary_only(self, engine, compare_pair):
        original, revised = compare_pair
        a = engine.upload(original, "v1.pdf")
        b = engine.upload(revised, "v2.pdf")
        job = engine.wait(engine.submit("compare", a.id, {"outputFormat": "summary_only"}, b.id), WAIT)
        assert job.result["outputDocumentId"] is None
        assert len(engine.documents()) == 2

    def test_ocr_native_leaves_document(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job = engine.wait(engine.submit("ocr", doc.id), WAIT)
        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["wordsExtracted"] == 30
        assert engine.download(doc.id) == text_pdf

    def test_protect(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job = engine.wait(engine.submit("protect", doc.id, {
            "enableUserPassword": True, "userPassword": "letmein",
        }), WAIT)
        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["protectedSize"] > 0

        locked = fitz.open(stream=engine.download(doc.id), filetype="pdf")
        try:
            assert locked.needs_pass
            assert locked.authenticate("letmein")
        finally:
            locked.close()

    def test_page_numbers(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job = engine.wait(engine.submit("pageNumber", doc.id, {"prefix": "Page "}), WAIT)
        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["labels"] == ["Page 1", "Page 2", "Page 3"]
        with Document.load(engine.download(doc.id)) as numbered:
            assert "Page 3" in numbered.page_text(3)

    def test_crop(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job = engine.wait(engine.submit("crop", doc.id, {
            "cropArea": {"x": 0, "y": 0, "width": 500, "height": 700},
        }), WAIT)
        assert job.state == JobState.SUCCEEDED, job.error
        assert job.result["pagesProcessed"] == 3
        with Document.load(engine.download(doc.id)) as cropped:
            assert cropped.get_page(1).width == pytest.approx(500)

    def test_health(self, engine, text_pdf):
        engine.upload(text_pdf, "plan.pdf")
        health = engine.health()
        assert health["status"] == "healthy"
        assert health["workers"] == 2
        assert health["documents"] == 1
        assert "redact" in ProdigyEngine.info()["jobKinds"]


# ═══════════════════════════════════════════════════════════════════════════════
# RETENTION & ARCHIVE
# ═══════════════════════════════════════════════════════════════════════════════


class TestRetention:
    """Test archiving of expired jobs to SQLite."""

    def test_purge_archives_job_and_audit(self, engine, ssn_pdf):
        doc = engine.upload(ssn_pdf, "personnel.pdf")
        job_id = engine.submit("redact", doc.id)
        engine.wait(job_id, WAIT)
        live_entries = engine.audit_entries(job_id)

        assert engine.queue.purge_expired(now=utcnow() + timedelta(hours=2)) == 1
        assert engine.jobs() == []

        archived = engine.status(job_id)
        assert archived.state == JobState.SUCCEEDED
        assert archived.result["totalRedactions"] == 3
        assert [e.detail for e in engine.audit_entries(job_id)] == [e.detail for e in live_entries]

        summaries = engine.archived_jobs(doc.id)
        assert [s["job_id"] for s in summaries] == [job_id]
        assert summaries[0]["kind"] == "redact"

    def test_passwords_never_leave_the_engine(self, engine, engine_config, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        job_id = engine.submit("protect", doc.id, {
            "enableUserPassword": True, "userPassword": "s3cret-pw",
            "enableOwnerPassword": True, "ownerPassword": "0wner-pw",
        })
        job = engine.wait(job_id, WAIT)
        assert job.state == JobState.SUCCEEDED, job.error

        live = job.model_dump_json(by_alias=True)
        assert "s3cret-pw" not in live
        assert "0wner-pw" not in live
        assert job.settings["enableUserPassword"] is True

        assert engine.queue.purge_expired(now=utcnow() + timedelta(hours=2)) == 1
        with db.get_connection(engine_config.db_path) as conn:
            row = conn.execute(
                "SELECT job_json FROM jobs_archive WHERE job_id = ?", (job_id,),
            ).fetchone()
        assert "s3cret-pw" not in row["job_json"]
        assert "0wner-pw" not in row["job_json"]

        locked = fitz.open(stream=engine.download(doc.id), filetype="pdf")
        try:
            assert locked.authenticate("s3cret-pw")
        finally:
            locked.close()

    def test_recent_jobs_are_kept(self, engine, text_pdf):
        doc = engine.upload(text_pdf, "plan.pdf")
        engine.wait(engine.submit("ocr", doc.id), WAIT)
        assert engine.queue.purge_expired() == 0
        assert len(engine.jobs(JobState.SUCCEEDED)) == 1


class TestDatabase:
    def test_archive_round_trip(self, tmp_path):
        path = str(tmp_path / "jobs.sqlite")
        db.init_db(path)
        db.init_db(path)

        job = Job(id="job-1", kind=JobKind.REPAIR, document_id="doc-1",
                  state=JobState.SUCCEEDED, completed_at=utcnow())
        entries = [
            AuditEntry(job_id="job-1", page=0, action=AuditAction.DETECTED, detail="Invalid xref"),
            AuditEntry(job_id="job-1", page=0, action=AuditAction.REPAIRED, detail="Rebuilt xref"),
        ]
        db.archive_job(job, entries, path)

        loaded = db.get_archived_job("job-1", path)
        assert loaded.kind == JobKind.REPAIR
        assert loaded.state == JobState.SUCCEEDED
        assert [e.action for e in db.get_archived_audit("job-1", path)] == [
            AuditAction.DETECTED, AuditAction.REPAIRED,
        ]
        assert db.list_archived_jobs("doc-2", path) == []
        assert db.get_archived_job("missing", path) is None
