"""
Data Models
===========
Pydantic models for jobs, findings, audit entries and engine results.
All models serialize to camelCase JSON for the front-end.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ─── Enums ────────────────────────────────────────────────────────────────────


class JobKind(str, Enum):
    """Operations a caller can submit."""
    REDACT = "redact"
    REPAIR = "repair"
    COMPARE = "compare"
    OCR = "ocr"
    PROTECT = "protect"
    PAGE_NUMBER = "pageNumber"
    CROP = "crop"

    @property
    def is_mutating(self) -> bool:
        return self is not JobKind.COMPARE

    @property
    def has_audit(self) -> bool:
        return self in (JobKind.REDACT, JobKind.REPAIR)


class JobState(str, Enum):
    """Lifecycle state of a job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class FindingKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class Category(str, Enum):
    """Detection category of a finding."""
    SSN = "ssn"
    CREDIT_CARD = "creditCard"
    PHONE_NUMBER = "phoneNumber"
    EMAIL = "email"
    ADDRESS = "address"
    BANK_ACCOUNT = "bankAccount"
    PASSPORT = "passport"
    DRIVER_LICENSE = "driverLicense"
    KEYWORD = "keyword"
    CUSTOM = "custom"
    IMAGE = "image"


class RegionSource(str, Enum):
    """Where a redaction region came from."""
    MANUAL = "manual"
    AUTO = "auto"
    KEYWORD = "keyword"
    PATTERN = "pattern"


class AuditAction(str, Enum):
    REDACTED = "redacted"
    DETECTED = "detected"
    REVIEWED = "reviewed"
    REPAIRED = "repaired"


class DiffType(str, Enum):
    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"
    MOVEMENT = "movement"


class IssueType(str, Enum):
    CORRUPTION = "corruption"
    STRUCTURE = "structure"
    CONTENT = "content"
    METADATA = "metadata"
    SECURITY = "security"


class IssueSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RepairStatus(str, Enum):
    """Terminal states of the per-document repair state machine."""
    REPAIRED = "repaired"
    PARTIALLY_REPAIRED = "partiallyRepaired"
    UNREPAIRABLE = "unrepairable"


class PageSource(str, Enum):
    NATIVE = "native"
    OCR = "ocr"


# ─── Geometry ─────────────────────────────────────────────────────────────────


class BoundingBox(ApiModel):
    """Axis-aligned box in PDF points, origin top-left."""
    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float

    @model_validator(mode="after")
    def _check_order(self) -> "BoundingBox":
        if self.x1 < self.x0 or self.y1 < self.y0:
            raise ValueError(
                f"Invalid bounding box ({self.x0}, {self.y0}, {self.x1}, {self.y1})"
            )
        return self

    @classmethod
    def from_rect(cls, rect) -> "BoundingBox":
        x0, y0, x1, y1 = tuple(rect)[:4]
        return cls(x0=x0, y0=y0, x1=x1, y1=y1)

    @classmethod
    def from_size(cls, x: float, y: float, width: float, height: float) -> "BoundingBox":
        return cls(x0=x, y0=y, x1=x + width, y1=y + height)

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        return ((self.x0 + self.x1) / 2, (self.y0 + self.y1) / 2)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.x0, self.y0, self.x1, self.y1)

    def intersects(self, other: "BoundingBox") -> bool:
        """True when the boxes share a region of positive area."""
        return (
            self.x0 < other.x1 and other.x0 < self.x1
            and self.y0 < other.y1 and other.y0 < self.y1
        )

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            x0=min(self.x0, other.x0),
            y0=min(self.y0, other.y0),
            x1=max(self.x1, other.x1),
            y1=max(self.y1, other.y1),
        )

    def contains_point(self, x: float, y: float) -> bool:
        return self.x0 <= x <= self.x1 and self.y0 <= y <= self.y1


# ─── Scanner / Redaction Models ───────────────────────────────────────────────


class Finding(ApiModel):
    """A detected piece of content on a page. Transient: lives for one job."""
    model_config = ConfigDict(frozen=True)

    page: int = Field(ge=1)
    kind: FindingKind
    bbox: BoundingBox
    content: str = Field(description="Matched text or image reference")
    category: Optional[Category] = None
    confidence: int = Field(ge=0, le=100)


class RedactionRegion(ApiModel):
    """A region whose content has been (or will be) destroyed."""
    page: int = Field(ge=1)
    bbox: BoundingBox
    source: RegionSource
    categories: list[Category] = Field(default_factory=list)
    applied_at: Optional[datetime] = None


class AuditEntry(ApiModel):
    """Append-only audit record. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    page: int = Field(ge=0)
    action: AuditAction
    detail: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


# ─── Comparison Models ────────────────────────────────────────────────────────


class Location(ApiModel):
    """Position of a change inside one of the compared documents."""
    page: int = Field(ge=1)
    word_index: int = Field(default=0, ge=0)
    bbox: Optional[BoundingBox] = None
    text: str = ""


class DiffRecord(ApiModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(ge=1)
    type: DiffType
    location_a: Optional[Location] = None
    location_b: Optional[Location] = None
    confidence: int = Field(ge=0, le=100)
    description: str = ""


# ─── Repair Models ────────────────────────────────────────────────────────────


class Issue(ApiModel):
    """A structural problem found during diagnosis."""
    type: IssueType
    severity: IssueSeverity
    description: str
    location: str = ""
    fixable: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.description, self.location)


# ─── Job Models ───────────────────────────────────────────────────────────────


class JobError(ApiModel):
    kind: str
    message: str


class Job(ApiModel):
    """A unit of work submitted to the queue."""
    id: str
    kind: JobKind
    state: JobState = JobState.QUEUED
    document_id: str
    compare_document_id: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[JobError] = None

    @computed_field
    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return round((self.completed_at - self.started_at).total_seconds(), 3)
        return None


# ─── Result Models ────────────────────────────────────────────────────────────


class RedactionResult(ApiModel):
    pages_processed: int = 0
    total_redactions: int = 0
    redactions_by_type: dict[str, int] = Field(default_factory=dict)
    regions: list[RedactionRegion] = Field(default_factory=list)
    security_level: str = "high"
    passes: int = 1
    metadata_scrubbed: bool = False
    verified: bool = False
    original_size: int = 0
    redacted_size: int = 0
    output_document_id: Optional[str] = None


class RepairResult(ApiModel):
    success: bool = True
    status: RepairStatus = RepairStatus.REPAIRED
    repair_level: str = "standard"
    issues_found: int = 0
    issues_fixed: int = 0
    remaining_issues: list[str] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    repair_actions: list[str] = Field(default_factory=list)
    recovered_pages: int = 0
    validated: bool = True
    original_size: int = 0
    repaired_size: int = 0
    output_document_id: Optional[str] = None

    @computed_field
    @property
    def health_score(self) -> int:
        if self.issues_found == 0:
            return 100
        return round(self.issues_fixed / self.issues_found * 100)


class ComparisonResult(ApiModel):
    records: list[DiffRecord] = Field(default_factory=list)
    total_changes: int = 0
    changes_summary: dict[str, int] = Field(default_factory=dict)
    pages_analyzed: int = 0
    pages_with_changes: int = 0
    similarity_score: float = 100.0
    structure_aware: bool = True
    output_document_id: Optional[str] = None


class OcrPage(ApiModel):
    page: int
    source: PageSource
    words: int = 0
    confidence: int = Field(default=100, ge=0, le=100)


class OcrResult(ApiModel):
    pages_processed: int = 0
    total_pages: int = 0
    pages: list[OcrPage] = Field(default_factory=list)
    extracted_text: str = ""
    text_preview: str = ""
    detected_languages: list[str] = Field(default_factory=list)
    confidence: int = 0
    characters_extracted: int = 0
    words_extracted: int = 0
    output_format: str = "searchable_pdf"
    output_document_id: Optional[str] = None


class ProtectionResult(ApiModel):
    protection_applied: list[str] = Field(default_factory=list)
    encryption_level: str = "aes128"
    original_size: int = 0
    protected_size: int = 0
    output_document_id: Optional[str] = None


class PageNumberResult(ApiModel):
    pages_numbered: int = 0
    total_pages: int = 0
    format: str = "numeric"
    position: str = "bottom_center"
    labels: list[str] = Field(default_factory=list)
    original_size: int = 0
    numbered_size: int = 0
    output_document_id: Optional[str] = None


class Dimensions(ApiModel):
    width: float
    height: float


class CropPage(ApiModel):
    page_number: int
    original_size: Dimensions
    cropped_size: Dimensions
    reduction_percentage: float
    crop_area: BoundingBox


class CropResult(ApiModel):
    pages_processed: int = 0
    original_dimensions: Optional[Dimensions] = None
    cropped_dimensions: Optional[Dimensions] = None
    crop_reduction: float = 0.0
    preview_pages: list[CropPage] = Field(default_factory=list)
    original_size: int = 0
    cropped_size: int = 0
    output_document_id: Optional[str] = None
