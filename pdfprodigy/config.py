"""
Engine Configuration
====================
Runtime knobs for the job engine, with ``PRODIGY_*`` environment overrides.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

DEFAULT_JOB_TIMEOUTS = {
    "redact": 600.0,
    "repair": 900.0,
    "compare": 900.0,
    "ocr": 1800.0,
    "protect": 120.0,
    "pageNumber": 300.0,
    "crop": 300.0,
}


@dataclass
class EngineConfig:
    """Configuration for the job engine."""

    # Worker pool
    workers: int = field(default_factory=lambda: os.cpu_count() or 2)

    # Per-kind timeouts in seconds
    job_timeouts: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_JOB_TIMEOUTS)
    )

    # Terminal jobs are archived after this many seconds
    retention_seconds: float = 3600.0

    # How long a reader waits behind a writer
    lock_timeout_seconds: float = 30.0

    # Document store (None keeps documents in memory only)
    storage_dir: Optional[str] = None
    max_upload_mb: int = 100

    # Archive database (None disables archiving)
    db_path: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def timeout_for(self, kind: str) -> float:
        return self.job_timeouts.get(kind, 600.0)

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """Build a config from PRODIGY_* variables, then apply overrides."""
        config = cls()
        env = os.environ

        if env.get("PRODIGY_WORKERS"):
            config.workers = int(env["PRODIGY_WORKERS"])
        if env.get("PRODIGY_RETENTION_SECONDS"):
            config.retention_seconds = float(env["PRODIGY_RETENTION_SECONDS"])
        if env.get("PRODIGY_LOCK_TIMEOUT"):
            config.lock_timeout_seconds = float(env["PRODIGY_LOCK_TIMEOUT"])
        if env.get("PRODIGY_STORAGE_DIR"):
            config.storage_dir = env["PRODIGY_STORAGE_DIR"]
        if env.get("PRODIGY_MAX_UPLOAD_MB"):
            config.max_upload_mb = int(env["PRODIGY_MAX_UPLOAD_MB"])
        if env.get("PRODIGY_DB_PATH"):
            config.db_path = env["PRODIGY_DB_PATH"]
        if env.get("PRODIGY_LOG_LEVEL"):
            config.log_level = env["PRODIGY_LOG_LEVEL"]
        if env.get("PRODIGY_LOG_FILE"):
            config.log_file = env["PRODIGY_LOG_FILE"]

        # PRODIGY_TIMEOUT_OCR=3600, PRODIGY_TIMEOUT_PAGENUMBER=60, ...
        for kind in list(config.job_timeouts):
            value = env.get(f"PRODIGY_TIMEOUT_{kind.upper()}")
            if value:
                config.job_timeouts[kind] = float(value)

        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the package logger once. Safe to call repeatedly."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("pdfprodigy")
    package_logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Console handler
    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in package_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    # File handler
    if log_file:
        target = str(Path(log_file).resolve())
        if not any(
            isinstance(h, logging.FileHandler) and h.baseFilename == target
            for h in package_logger.handlers
        ):
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)

    return package_logger
