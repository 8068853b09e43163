"""
Job Queue & Worker Pool
=======================
FIFO queue of jobs served by a fixed pool of worker threads.

Architecture:
    - ``submit`` validates settings, claims the document for mutating kinds
      and enqueues; it never blocks on work
    - Each worker loops: pop the oldest queued job → Running → processor →
      Succeeded | Failed | Cancelled
    - Cancellation is cooperative: engines call ``checkpoint()`` between
      pages, which raises once the job's token fires
    - A timer per running job fires the same token with reason "timeout",
      which ends the job as Failed/Timeout
    - A janitor thread archives terminal jobs past the retention window

State machine (monotonic):
    Queued → Running → {Succeeded, Failed, Cancelled}
    Queued → Cancelled
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections import deque
from datetime import timedelta
from typing import Any, Optional

from . import database as db
from .audit import AuditLog
from .config import EngineConfig
from .errors import (
    DocumentBusy,
    DocumentNotFound,
    InvalidSettings,
    JobCancelled,
    JobNotFound,
    JobTimeout,
    NoAuditTrail,
    ProdigyError,
)
from .models import AuditEntry, Job, JobError, JobKind, JobState, utcnow
from .processor import JobProcessor
from .scanner import Ruleset
from .settings import SettingsModel, parse_settings
from .storage import DocumentStore

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"

ALLOWED_TRANSITIONS = {
    JobState.QUEUED: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED},
}


class CancellationToken:
    """Set once; every later ``checkpoint()`` raises JobCancelled."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def checkpoint(self):
        if self._event.is_set():
            raise JobCancelled(self.reason or "cancelled")


class JobQueue:
    """Owns every in-memory job and the workers that run them."""

    def __init__(
        self,
        processor: JobProcessor,
        store: DocumentStore,
        audit: AuditLog,
        config: Optional[EngineConfig] = None,
    ):
        self.processor = processor
        self.store = store
        self.audit = audit
        self.config = config or EngineConfig()

        self._cond = threading.Condition()
        self._jobs: dict[str, Job] = {}
        self._settings: dict[str, SettingsModel] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._done: dict[str, threading.Event] = {}
        self._pending: deque[str] = deque()
        self._claims: dict[str, str] = {}  # document id -> job id

        self._workers: list[threading.Thread] = []
        self._janitor: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._running = False

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def start(self):
        with self._cond:
            if self._running:
                return
            self._running = True
            self._stopping.clear()

        for index in range(max(1, self.config.workers)):
            thread = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"prodigy-worker-{index}",
            )
            thread.start()
            self._workers.append(thread)

        self._janitor = threading.Thread(
            target=self._janitor_loop,
            daemon=True,
            name="prodigy-janitor",
        )
        self._janitor.start()
        logger.info(f"Started {len(self._workers)} workers")

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """Stop taking jobs. Running jobs finish; queued ones are cancelled."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            for job_id in list(self._pending):
                self._tokens[job_id].cancel()
                self._finish_locked(job_id, JobState.CANCELLED)
            self._pending.clear()
            self._cond.notify_all()
        self._stopping.set()

        if wait:
            for thread in self._workers:
                thread.join(timeout)
            if self._janitor:
                self._janitor.join(timeout)
        self._workers = []
        self._janitor = None
        logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ─── Public API ───────────────────────────────────────────────────────

    def submit(
        self,
        kind: JobKind | str,
        document_id: str,
        settings: Optional[dict[str, Any]] = None,
        compare_document_id: Optional[str] = None,
    ) -> str:
        """
        Validate and enqueue a job. Returns its id immediately.

        Raises:
            InvalidSettings: unknown kind, bad settings, missing compare target.
            InvalidPattern: a custom redaction pattern does not compile.
            DocumentNotFound: a referenced document is not in the store.
            DocumentBusy: another mutating job already claims the document.
        """
        try:
            kind = JobKind(kind)
        except ValueError:
            raise InvalidSettings(
                f"Unknown job kind '{kind}'",
                detail={"allowed": [k.value for k in JobKind]},
            ) from None

        parsed = parse_settings(kind, settings)
        if kind == JobKind.REDACT:
            Ruleset.from_settings(parsed)

        if not self.store.exists(document_id):
            raise DocumentNotFound(f"Document {document_id} not found")
        if kind == JobKind.COMPARE:
            if not compare_document_id:
                raise InvalidSettings("Compare jobs need a compareDocumentId")
            if not self.store.exists(compare_document_id):
                raise DocumentNotFound(f"Document {compare_document_id} not found")
        else:
            compare_document_id = None

        job = Job(
            id=str(uuid.uuid4()),
            kind=kind,
            document_id=document_id,
            compare_document_id=compare_document_id,
            settings=parsed.model_dump(by_alias=True, mode="json"),
        )

        with self._cond:
            if kind.is_mutating:
                holder = self._claims.get(document_id)
                if holder is not None:
                    raise DocumentBusy(
                        f"Document {document_id} is already claimed by job {holder}",
                        detail={"documentId": document_id, "heldBy": holder},
                    )
                self._claims[document_id] = job.id
            self._jobs[job.id] = job
            self._settings[job.id] = parsed
            self._tokens[job.id] = CancellationToken()
            self._done[job.id] = threading.Event()
            self._pending.append(job.id)
            self._cond.notify()

        logger.info(f"Queued job {job.id} ({kind.value}) for document {document_id}")
        return job.id

    def get_status(self, job_id: str) -> Job:
        """Snapshot of a job, falling back to the archive."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.model_copy(deep=True)
        if self.config.db_path:
            archived = db.get_archived_job(job_id, self.config.db_path)
            if archived is not None:
                return archived
        raise JobNotFound(f"Job {job_id} not found")

    def cancel(self, job_id: str) -> Job:
        """
        Queued jobs are cancelled on the spot. Running jobs are flagged and
        stop at their next checkpoint. Terminal jobs are left alone.
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if job.state == JobState.QUEUED:
                self._tokens[job_id].cancel()
                self._pending.remove(job_id)
                self._finish_locked(job_id, JobState.CANCELLED)
                logger.info(f"Cancelled queued job {job_id}")
            elif job.state == JobState.RUNNING:
                self._tokens[job_id].cancel()
                logger.info(f"Cancellation requested for running job {job_id}")
            return job.model_copy(deep=True)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal or the timeout passes."""
        with self._cond:
            done = self._done.get(job_id)
        if done is not None:
            done.wait(timeout)
        return self.get_status(job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> list[Job]:
        with self._cond:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values()]
        if state is not None:
            jobs = [j for j in jobs if j.state == state]
        return sorted(jobs, key=lambda j: j.created_at)

    def audit_entries(self, job_id: str) -> list[AuditEntry]:
        job = self.get_status(job_id)
        if not job.kind.has_audit:
            raise NoAuditTrail(f"{job.kind.value} jobs do not keep an audit trail")
        with self._cond:
            in_memory = job_id in self._jobs
        if in_memory or not self.config.db_path:
            return self.audit.entries(job_id)
        return db.get_archived_audit(job_id, self.config.db_path)

    def stats(self) -> dict[str, int]:
        with self._cond:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    # ─── Workers ──────────────────────────────────────────────────────────

    def _worker_loop(self):
        while True:
            with self._cond:
                while self._running and not self._pending:
                    self._cond.wait()
                if not self._running:
                    return
                job_id = self._pending.popleft()
                job = self._jobs[job_id]
                self._transition_locked(job, JobState.RUNNING)
                job.started_at = utcnow()
                settings = self._settings[job_id]
                token = self._tokens[job_id]
                snapshot = job.model_copy(deep=True)

            self._run(snapshot, settings, token)

    def _run(self, job: Job, settings: SettingsModel, token: CancellationToken):
        limit = self.config.timeout_for(job.kind.value)
        timer = threading.Timer(limit, token.cancel, args=(TIMEOUT_REASON,))
        timer.daemon = True
        timer.start()
        try:
            token.checkpoint()
            result = self.processor.execute(job, settings, token.checkpoint)
        except JobCancelled as e:
            if e.reason == TIMEOUT_REASON:
                timeout = JobTimeout(f"Job exceeded its {limit:g}s time limit")
                logger.warning(f"Job {job.id} timed out after {limit}s")
                self._finish(job.id, JobState.FAILED, error=JobError(
                    kind=timeout.kind,
                    message=timeout.message,
                ))
            else:
                logger.info(f"Job {job.id} cancelled")
                self._finish(job.id, JobState.CANCELLED)
        except ProdigyError as e:
            logger.warning(f"Job {job.id} failed: [{e.kind}] {e.message}")
            self._finish(job.id, JobState.FAILED, error=JobError(kind=e.kind, message=e.message))
        except Exception as e:
            # One job's crash must not take the worker down with it
            logger.exception(f"Job {job.id} crashed")
            self._finish(job.id, JobState.FAILED, error=JobError(
                kind="Internal",
                message=str(e) or type(e).__name__,
            ))
        else:
            self._finish(job.id, JobState.SUCCEEDED, result=result.to_json_dict())
            logger.info(f"Job {job.id} succeeded")
        finally:
            timer.cancel()

    # ─── State ────────────────────────────────────────────────────────────

    def _transition_locked(self, job: Job, state: JobState):
        if state not in ALLOWED_TRANSITIONS.get(job.state, set()):
            raise RuntimeError(
                f"Illegal transition {job.state.value} -> {state.value} for job {job.id}"
            )
        job.state = state

    def _finish(self, job_id: str, state: JobState, result=None, error=None):
        with self._cond:
            self._finish_locked(job_id, state, result, error)
            document_id = self._jobs[job_id].document_id
        self.processor.locks.discard(document_id)

    def _finish_locked(self, job_id: str, state: JobState, result=None, error=None):
        job = self._jobs[job_id]
        self._transition_locked(job, state)
        job.completed_at = utcnow()
        job.result = result
        job.error = error
        if self._claims.get(job.document_id) == job_id:
            del self._claims[job.document_id]
        self._done[job_id].set()
        self._cond.notify_all()

    # ─── Retention ────────────────────────────────────────────────────────

    def _janitor_loop(self):
        interval = min(60.0, max(1.0, self.config.retention_seconds / 2))
        while not self._stopping.wait(interval):
            self.purge_expired()

    def purge_expired(self, now=None) -> int:
        """Archive and evict terminal jobs older than the retention window."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.config.retention_seconds)
        with self._cond:
            expired = [
                job for job in self._jobs.values()
                if job.state.is_terminal and job.completed_at and job.completed_at <= cutoff
            ]

        purged = 0
        for job in expired:
            if self.config.db_path:
                try:
                    db.archive_job(job, self.audit.entries(job.id), self.config.db_path)
                except sqlite3.Error:
                    logger.exception(f"Could not archive job {job.id}; keeping it in memory")
                    continue
            with self._cond:
                self._jobs.pop(job.id, None)
                self._settings.pop(job.id, None)
                self._tokens.pop(job.id, None)
                self._done.pop(job.id, None)
            self.audit.pop(job.id)
            purged += 1

        if purged:
            logger.info(f"Archived {purged} expired jobs")
        return purged
