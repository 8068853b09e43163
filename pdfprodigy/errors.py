"""
Error Taxonomy
==============
Every failure surfaced to a caller carries a machine-readable ``kind``
and a human-readable message, so a front-end can decide between
retry and explain.
"""

from __future__ import annotations


class ProdigyError(Exception):
    """Base class for all engine errors."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "", detail: dict | None = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail or {}

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


class CorruptDocument(ProdigyError):
    """The document bytes could not be parsed as a PDF."""

    kind = "CorruptDocument"
    status_code = 422


class EncryptedDocument(ProdigyError):
    """The document is password protected and cannot be processed."""

    kind = "EncryptedDocument"
    status_code = 422


class InvalidPattern(ProdigyError):
    """A custom regex or ruleset failed validation."""

    kind = "InvalidPattern"
    status_code = 422


class InvalidSettings(ProdigyError):
    """Job settings contained unknown options or out-of-range values."""

    kind = "InvalidSettings"
    status_code = 400


class DocumentBusy(ProdigyError):
    """Another mutating job holds the document."""

    kind = "DocumentBusy"
    status_code = 409


class DocumentNotFound(ProdigyError):
    kind = "DocumentNotFound"
    status_code = 404


class JobNotFound(ProdigyError):
    kind = "JobNotFound"
    status_code = 404


class IncompleteRedaction(ProdigyError):
    """Post-redaction verification found residual content."""

    kind = "IncompleteRedaction"
    status_code = 500


class Unrepairable(ProdigyError):
    """Repair produced zero usable pages."""

    kind = "Unrepairable"
    status_code = 422


class PageIndexOutOfRange(ProdigyError):
    kind = "PageIndexOutOfRange"
    status_code = 400


class OcrUnavailable(ProdigyError):
    """Tesseract is not installed or its language data is missing."""

    kind = "OcrUnavailable"
    status_code = 503


class JobTimeout(ProdigyError):
    """A job ran past its per-kind time limit."""

    kind = "Timeout"
    status_code = 504


class JobCancelled(ProdigyError):
    """Raised inside an engine when its cancellation token fires."""

    kind = "Cancelled"
    status_code = 409

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Job {reason}")
        self.reason = reason


class DocumentTooLarge(ProdigyError):
    kind = "DocumentTooLarge"
    status_code = 413


class NoAuditTrail(ProdigyError):
    """Audit entries exist for redact and repair jobs only."""

    kind = "NoAuditTrail"
    status_code = 400
