"""
SQLite Archive
==============
Terminal jobs that outlive the retention window are moved here from memory,
together with their audit entries, so ``GET /jobs/{id}`` keeps answering.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .models import AuditEntry, Job

logger = logging.getLogger(__name__)

# Default database path: project_root/prodigy.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "prodigy.sqlite")


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("PRODIGY_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times: uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initializing archive database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs_archive (
                job_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                state TEXT NOT NULL,
                document_id TEXT NOT NULL,
                compare_document_id TEXT,
                job_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                archived_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS audit_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                page INTEGER NOT NULL,
                action TEXT NOT NULL,
                detail TEXT DEFAULT '',
                timestamp TEXT NOT NULL,
                FOREIGN KEY(job_id) REFERENCES jobs_archive(job_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_audit_job_id
                ON audit_entries(job_id);
            CREATE INDEX IF NOT EXISTS idx_archive_document
                ON jobs_archive(document_id);
        """)

    logger.info("Archive schema initialized successfully")


# ─── Jobs ─────────────────────────────────────────────────────────────────────


def archive_job(job: Job, entries: list[AuditEntry], db_path: str = None):
    """Persist a terminal job and its audit trail in one transaction."""
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT OR REPLACE INTO jobs_archive
               (job_id, kind, state, document_id, compare_document_id,
                job_json, created_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job.id, job.kind.value, job.state.value, job.document_id,
                job.compare_document_id, job.model_dump_json(by_alias=True),
                job.created_at.isoformat(),
                job.completed_at.isoformat() if job.completed_at else None,
            ),
        )
        conn.executemany(
            """INSERT INTO audit_entries (job_id, page, action, detail, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (e.job_id, e.page, e.action.value, e.detail, e.timestamp.isoformat())
                for e in entries
            ],
        )
    logger.info(f"Archived job {job.id} ({len(entries)} audit entries)")


def get_archived_job(job_id: str, db_path: str = None) -> Optional[Job]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT job_json FROM jobs_archive WHERE job_id = ?", (job_id,)
        ).fetchone()
    if not row:
        return None
    return Job.model_validate(json.loads(row["job_json"]))


def list_archived_jobs(document_id: str = None, db_path: str = None) -> list[dict]:
    """Archive summaries, newest first."""
    query = "SELECT job_id, kind, state, document_id, created_at, completed_at FROM jobs_archive"
    params: tuple = ()
    if document_id:
        query += " WHERE document_id = ?"
        params = (document_id,)
    query += " ORDER BY created_at DESC"
    with get_connection(db_path) as conn:
        return [dict(r) for r in conn.execute(query, params).fetchall()]


def get_archived_audit(job_id: str, db_path: str = None) -> list[AuditEntry]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM audit_entries WHERE job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
    return [
        AuditEntry(
            job_id=r["job_id"],
            page=r["page"],
            action=r["action"],
            detail=r["detail"],
            timestamp=r["timestamp"],
        )
        for r in rows
    ]

