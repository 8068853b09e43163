"""
Job Settings
============
One pydantic model per job kind. Settings are validated when a job is
submitted, never when it runs: unknown options and out-of-range values
raise ``InvalidSettings`` before anything is queued.
"""

from __future__ import annotations

import re
from typing import Annotated, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import InvalidSettings
from .models import Category, JobKind

HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def hex_to_rgb(value: str) -> tuple[float, float, float]:
    """'#ff0000' -> (1.0, 0.0, 0.0)"""
    digits = value.lstrip("#")
    if len(digits) == 3:
        digits = "".join(c * 2 for c in digits)
    return tuple(int(digits[i:i + 2], 16) / 255 for i in (0, 2, 4))


class SettingsModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


def _check_color(value: str) -> str:
    if not HEX_COLOR.match(value):
        raise ValueError(f"'{value}' is not a hex color")
    return value


HexColor = Annotated[str, AfterValidator(_check_color)]


# ─── Redaction ────────────────────────────────────────────────────────────────


class AutoDetectionTypes(SettingsModel):
    ssn: bool = True
    credit_card: bool = True
    phone_number: bool = True
    email: bool = True
    address: bool = False
    bank_account: bool = True
    passport: bool = False
    driver_license: bool = False
    custom: bool = False

    def enabled(self) -> set[Category]:
        return {
            Category(to_camel(name))
            for name, on in self.model_dump().items()
            if on and name != "custom"
        }


class RedactionStyle(SettingsModel):
    fill_color: HexColor = "#000000"
    border_color: HexColor = "#ff0000"
    border_width: float = Field(default=2, ge=0, le=20)
    opacity: int = Field(default=100, ge=0, le=100)
    pattern: Literal["solid", "striped", "crosshatch", "dots"] = "solid"


class ManualRegion(SettingsModel):
    page: int = Field(ge=1)
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)


SECURITY_PASSES = {"standard": 1, "high": 3, "military": 7, "legal": 5}


class RedactSettings(SettingsModel):
    redaction_mode: Literal["manual", "auto", "pattern", "keyword"] = "auto"
    auto_detection_types: AutoDetectionTypes = Field(default_factory=AutoDetectionTypes)
    keywords: list[str] = Field(default_factory=list)
    case_sensitive: bool = False
    fuzzy_keywords: bool = False
    custom_patterns: list[str] = Field(default_factory=list)
    redact_images: bool = False
    manual_regions: list[ManualRegion] = Field(default_factory=list)
    redaction_style: RedactionStyle = Field(default_factory=RedactionStyle)
    security_level: Literal["standard", "high", "military", "legal"] = "high"
    preserve_metadata: bool = False

    @field_validator("keywords")
    @classmethod
    def _strip_keywords(cls, value: list[str]) -> list[str]:
        return [k.strip() for k in value if k.strip()]

    @property
    def passes(self) -> int:
        return SECURITY_PASSES[self.security_level]


# ─── Repair ───────────────────────────────────────────────────────────────────


class RepairSettings(SettingsModel):
    repair_level: Literal["basic", "standard", "aggressive", "recovery"] = "standard"
    fix_structure: bool = True
    recover_content: bool = True
    optimize_after_repair: bool = True
    preserve_metadata: bool = True
    handle_missing_fonts: bool = True
    fix_image_corruption: bool = True
    validate_after_repair: bool = True


# ─── Comparison ───────────────────────────────────────────────────────────────


SENSITIVITY_CHARS = {"low": 20, "medium": 5, "high": 2, "precise": 1}


class IgnoreOptions(SettingsModel):
    whitespace: bool = False
    case: bool = False
    images: bool = False
    headers: bool = True
    footers: bool = True
    page_numbers: bool = True
    annotations: bool = False


class HighlightOptions(SettingsModel):
    additions: HexColor = "#22c55e"
    deletions: HexColor = "#ef4444"
    modifications: HexColor = "#f59e0b"
    movements: HexColor = "#8b5cf6"


class CompareSettings(SettingsModel):
    comparison_type: Literal["text", "structure", "comprehensive"] = "comprehensive"
    sensitivity: Literal["low", "medium", "high", "precise"] = "medium"
    ignore_options: IgnoreOptions = Field(default_factory=IgnoreOptions)
    highlight_options: HighlightOptions = Field(default_factory=HighlightOptions)
    output_format: Literal[
        "side_by_side", "unified", "detailed_report", "summary_only"
    ] = "side_by_side"
    structure_aware: Optional[bool] = None
    page_match_threshold: float = Field(default=0.6, gt=0, le=1)
    movement_threshold: float = Field(default=0.85, gt=0, le=1)

    @property
    def min_change_chars(self) -> int:
        return SENSITIVITY_CHARS[self.sensitivity]

    @property
    def is_structure_aware(self) -> bool:
        if self.structure_aware is not None:
            return self.structure_aware
        return self.comparison_type != "text"


# ─── OCR ──────────────────────────────────────────────────────────────────────


ACCURACY_DPI = {"fast": 150, "balanced": 300, "accurate": 400, "premium": 600}

# ISO 639-1 -> Tesseract traineddata names
TESSERACT_LANGUAGES = {
    "en": "eng", "es": "spa", "fr": "fra", "de": "deu", "it": "ita",
    "pt": "por", "nl": "nld", "ru": "rus", "zh": "chi_sim", "ja": "jpn",
    "ko": "kor", "ar": "ara", "hi": "hin", "pl": "pol", "tr": "tur",
    "sv": "swe", "da": "dan", "no": "nor", "fi": "fin", "cs": "ces",
}


class OcrSettings(SettingsModel):
    languages: list[str] = Field(default_factory=lambda: ["en"], min_length=1)
    output_format: Literal["searchable_pdf", "text_only"] = "searchable_pdf"
    accuracy: Literal["fast", "balanced", "accurate", "premium"] = "balanced"
    force: bool = False
    preserve_layout: bool = True

    @field_validator("languages")
    @classmethod
    def _known_languages(cls, value: list[str]) -> list[str]:
        unknown = [lang for lang in value if lang not in TESSERACT_LANGUAGES]
        if unknown:
            raise ValueError(f"Unsupported OCR languages: {', '.join(unknown)}")
        return value

    @property
    def dpi(self) -> int:
        return ACCURACY_DPI[self.accuracy]

    @property
    def tesseract_language(self) -> str:
        return "+".join(TESSERACT_LANGUAGES[lang] for lang in self.languages)


# ─── Protect ──────────────────────────────────────────────────────────────────


class Permissions(SettingsModel):
    allow_printing: bool = True
    allow_copying: bool = True
    allow_editing: bool = True
    allow_form_filling: bool = True
    allow_annotations: bool = True
    allow_screen_readers: bool = True
    allow_assembly: bool = False
    allow_high_quality_print: bool = True


class ProtectSettings(SettingsModel):
    user_password: SecretStr = SecretStr("")
    owner_password: SecretStr = SecretStr("")
    enable_user_password: bool = False
    enable_owner_password: bool = False
    permissions: Permissions = Field(default_factory=Permissions)
    encryption_level: Literal["standard", "high", "aes128", "aes256"] = "aes128"

    @model_validator(mode="after")
    def _needs_password(self) -> "ProtectSettings":
        user = self.enable_user_password and self.user_password.get_secret_value()
        owner = self.enable_owner_password and self.owner_password.get_secret_value()
        if not (user or owner):
            raise ValueError("At least one password must be enabled and non-empty")
        return self


# ─── Page numbers ─────────────────────────────────────────────────────────────


class PageRange(SettingsModel):
    enabled: bool = False
    start: int = Field(default=1, ge=1)
    end: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "PageRange":
        if self.enabled and self.end < self.start:
            raise ValueError("pageRange.end must not precede pageRange.start")
        return self


class PageNumberSettings(SettingsModel):
    format: Literal[
        "numeric", "roman_lower", "roman_upper", "alpha_lower", "alpha_upper"
    ] = "numeric"
    position: Literal[
        "top_left", "top_center", "top_right",
        "bottom_left", "bottom_center", "bottom_right",
    ] = "bottom_center"
    start_number: int = Field(default=1, ge=1)
    prefix: str = ""
    suffix: str = ""
    font_size: float = Field(default=12, ge=4, le=72)
    font_family: Literal["Arial", "Times", "Helvetica", "Courier"] = "Arial"
    font_color: HexColor = "#000000"
    margin_x: float = Field(default=20, ge=0)
    margin_y: float = Field(default=20, ge=0)
    skip_first_page: bool = False
    skip_last_page: bool = False
    page_range: PageRange = Field(default_factory=PageRange)


# ─── Crop ─────────────────────────────────────────────────────────────────────


class Margins(SettingsModel):
    top: float = Field(default=20, ge=0)
    bottom: float = Field(default=20, ge=0)
    left: float = Field(default=20, ge=0)
    right: float = Field(default=20, ge=0)
    unit: Literal["px", "in", "cm", "mm"] = "mm"


class CropArea(SettingsModel):
    x: float = Field(default=50, ge=0)
    y: float = Field(default=50, ge=0)
    width: float = Field(default=400, gt=0)
    height: float = Field(default=600, gt=0)


class CustomDimensions(SettingsModel):
    width: float = Field(default=210, gt=0)
    height: float = Field(default=297, gt=0)
    unit: Literal["px", "in", "cm", "mm"] = "mm"


class CropSettings(SettingsModel):
    crop_method: Literal[
        "manual", "auto_margins", "content_based", "remove_whitespace", "preset"
    ] = "manual"
    preset_format: Literal["letter", "a4", "legal", "tabloid", "custom"] = "a4"
    custom_dimensions: CustomDimensions = Field(default_factory=CustomDimensions)
    margins: Margins = Field(default_factory=Margins)
    crop_area: CropArea = Field(default_factory=CropArea)
    padding: float = Field(default=10, ge=0)
    apply_to_all_pages: bool = True
    selected_pages: list[int] = Field(default_factory=list)

    @field_validator("selected_pages")
    @classmethod
    def _positive_pages(cls, value: list[int]) -> list[int]:
        if any(p < 1 for p in value):
            raise ValueError("selectedPages are 1-based")
        return sorted(set(value))

    @model_validator(mode="after")
    def _pages_chosen(self) -> "CropSettings":
        if not self.apply_to_all_pages and not self.selected_pages:
            raise ValueError("selectedPages is required when applyToAllPages is false")
        return self


# ─── Dispatch ─────────────────────────────────────────────────────────────────


SETTINGS_MODELS: dict[JobKind, type[SettingsModel]] = {
    JobKind.REDACT: RedactSettings,
    JobKind.REPAIR: RepairSettings,
    JobKind.COMPARE: CompareSettings,
    JobKind.OCR: OcrSettings,
    JobKind.PROTECT: ProtectSettings,
    JobKind.PAGE_NUMBER: PageNumberSettings,
    JobKind.CROP: CropSettings,
}


def parse_settings(kind: JobKind, raw: Optional[dict]) -> SettingsModel:
    """Validate raw camelCase settings for a job kind."""
    model = SETTINGS_MODELS[kind]
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or kind.value}: {err['msg']}"
            for err in e.errors()
        ]
        raise InvalidSettings(
            f"Invalid {kind.value} settings: {'; '.join(problems)}",
            detail={"errors": problems},
        ) from e
