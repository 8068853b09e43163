"""
Page Transforms
===============
The smaller mutating jobs: password protection, page numbering and
cropping. Each takes a loaded, write-locked document and returns its
result model; the processor serializes and stores the document.
"""

from __future__ import annotations

import logging
import secrets
from typing import Callable, Optional

import fitz  # PyMuPDF

from .document import Document, SecurityDescriptor
from .errors import PageIndexOutOfRange
from .models import (
    BoundingBox,
    CropPage,
    CropResult,
    Dimensions,
    PageNumberResult,
    ProtectionResult,
)
from .settings import (
    CropSettings,
    PageNumberSettings,
    ProtectSettings,
    hex_to_rgb,
)

logger = logging.getLogger(__name__)


# ─── Protect ──────────────────────────────────────────────────────────────────


def protect(doc: Document, settings: ProtectSettings) -> ProtectionResult:
    """
    Attach a security descriptor; encryption happens at serialization.

    Without an owner password a random one is generated so the permission
    flags still bind readers who open the file with the user password.
    """
    applied = []
    user = settings.user_password.get_secret_value() if settings.enable_user_password else ""
    owner = settings.owner_password.get_secret_value() if settings.enable_owner_password else ""
    if user:
        applied.append("userPassword")
    if owner:
        applied.append("ownerPassword")
    else:
        owner = secrets.token_urlsafe(24)

    permissions = settings.permissions.model_dump()
    if not all(permissions.values()):
        applied.append("permissions")
    applied.append(f"encryption:{settings.encryption_level}")

    doc.security = SecurityDescriptor(
        encryption_level=settings.encryption_level,
        user_password=user,
        owner_password=owner,
        permissions=permissions,
    )
    logger.info(f"Protection prepared: {', '.join(applied)}")
    return ProtectionResult(
        protection_applied=applied,
        encryption_level=settings.encryption_level,
    )


# ─── Page numbers ─────────────────────────────────────────────────────────────


FONT_NAMES = {
    "Arial": "helv",
    "Helvetica": "helv",
    "Times": "tiro",
    "Courier": "cour",
}

_ROMAN_VALUES = [
    (1000, "m"), (900, "cm"), (500, "d"), (400, "cd"),
    (100, "c"), (90, "xc"), (50, "l"), (40, "xl"),
    (10, "x"), (9, "ix"), (5, "v"), (4, "iv"), (1, "i"),
]


def to_roman(number: int) -> str:
    """4 -> 'iv'. Lower case; callers upper() as needed."""
    if number < 1:
        raise ValueError("Roman numerals start at 1")
    out = []
    for value, symbol in _ROMAN_VALUES:
        count, number = divmod(number, value)
        out.append(symbol * count)
    return "".join(out)


def to_alpha(number: int) -> str:
    """1 -> 'a', 26 -> 'z', 27 -> 'aa'."""
    if number < 1:
        raise ValueError("Alphabetic labels start at 1")
    out = []
    while number:
        number, rem = divmod(number - 1, 26)
        out.append(chr(ord("a") + rem))
    return "".join(reversed(out))


def format_number(number: int, fmt: str) -> str:
    if fmt == "roman_lower":
        return to_roman(number)
    if fmt == "roman_upper":
        return to_roman(number).upper()
    if fmt == "alpha_lower":
        return to_alpha(number)
    if fmt == "alpha_upper":
        return to_alpha(number).upper()
    return str(number)


def numbered_pages(page_count: int, settings: PageNumberSettings) -> list[int]:
    """1-based pages that receive a number, in order."""
    first, last = 1, page_count
    if settings.page_range.enabled:
        if settings.page_range.start > page_count:
            raise PageIndexOutOfRange(
                f"Page range starts at {settings.page_range.start} but the document "
                f"has {page_count} pages",
                detail={"page": settings.page_range.start, "pageCount": page_count},
            )
        first = settings.page_range.start
        last = min(settings.page_range.end, page_count)

    pages = list(range(first, last + 1))
    if settings.skip_first_page:
        pages = [p for p in pages if p != 1]
    if settings.skip_last_page:
        pages = [p for p in pages if p != page_count]
    return pages


def label_position(rect: fitz.Rect, label_width: float,
                   settings: PageNumberSettings) -> fitz.Point:
    """Baseline origin for a label of the given width."""
    vertical, horizontal = settings.position.split("_")
    if horizontal == "left":
        x = settings.margin_x
    elif horizontal == "right":
        x = rect.width - settings.margin_x - label_width
    else:
        x = (rect.width - label_width) / 2
    if vertical == "top":
        y = settings.margin_y + settings.font_size
    else:
        y = rect.height - settings.margin_y
    return fitz.Point(max(x, 0), y)


def add_page_numbers(
    doc: Document,
    settings: PageNumberSettings,
    checkpoint: Optional[Callable[[], None]] = None,
) -> PageNumberResult:
    fontname = FONT_NAMES[settings.font_family]
    color = hex_to_rgb(settings.font_color)
    labels = []

    for position, number in enumerate(numbered_pages(doc.page_count, settings)):
        if checkpoint:
            checkpoint()
        page = doc.get_page(number).raw
        label = (
            f"{settings.prefix}"
            f"{format_number(settings.start_number + position, settings.format)}"
            f"{settings.suffix}"
        )
        width = fitz.get_text_length(label, fontname=fontname, fontsize=settings.font_size)
        page.insert_text(
            label_position(page.rect, width, settings),
            label,
            fontname=fontname,
            fontsize=settings.font_size,
            color=color,
        )
        labels.append(label)

    logger.info(f"Numbered {len(labels)} of {doc.page_count} pages ({settings.format})")
    return PageNumberResult(
        pages_numbered=len(labels),
        total_pages=doc.page_count,
        format=settings.format,
        position=settings.position,
        labels=labels,
    )


# ─── Crop ─────────────────────────────────────────────────────────────────────


# Points per unit
UNIT_POINTS = {
    "px": 0.75,
    "in": 72.0,
    "cm": 72 / 2.54,
    "mm": 72 / 25.4,
}

# Portrait sizes in points
PRESET_SIZES = {
    "letter": (612.0, 792.0),
    "a4": (595.28, 841.89),
    "legal": (612.0, 1008.0),
    "tabloid": (792.0, 1224.0),
}

MAX_PREVIEW_PAGES = 10


def to_points(value: float, unit: str) -> float:
    return value * UNIT_POINTS[unit]


def content_rect(page: fitz.Page, include_drawings: bool) -> Optional[fitz.Rect]:
    """Union of everything visible on the page, or None for a blank page."""
    rect = fitz.Rect()
    for x0, y0, x1, y1, *_ in page.get_text("words"):
        rect |= fitz.Rect(x0, y0, x1, y1)
    for info in page.get_image_info():
        rect |= fitz.Rect(info["bbox"])
    if include_drawings:
        for path in page.get_drawings():
            rect |= path["rect"]
    return None if rect.is_empty else rect


def crop_rect(page: fitz.Page, settings: CropSettings) -> Optional[fitz.Rect]:
    """Target crop box in page coordinates, before clamping."""
    bounds = page.rect
    method = settings.crop_method

    if method == "manual":
        area = settings.crop_area
        return fitz.Rect(area.x, area.y, area.x + area.width, area.y + area.height)

    if method == "auto_margins":
        m = settings.margins
        return fitz.Rect(
            to_points(m.left, m.unit),
            to_points(m.top, m.unit),
            bounds.width - to_points(m.right, m.unit),
            bounds.height - to_points(m.bottom, m.unit),
        )

    if method in ("content_based", "remove_whitespace"):
        content = content_rect(page, include_drawings=method == "remove_whitespace")
        if content is None:
            return None
        pad = settings.padding
        return fitz.Rect(content.x0 - pad, content.y0 - pad, content.x1 + pad, content.y1 + pad)

    # preset
    if settings.preset_format == "custom":
        dims = settings.custom_dimensions
        width = to_points(dims.width, dims.unit)
        height = to_points(dims.height, dims.unit)
    else:
        width, height = PRESET_SIZES[settings.preset_format]
    x0 = (bounds.width - width) / 2
    y0 = (bounds.height - height) / 2
    return fitz.Rect(x0, y0, x0 + width, y0 + height)


def _dimensions(rect) -> Dimensions:
    return Dimensions(width=round(rect.width, 2), height=round(rect.height, 2))


def crop(
    doc: Document,
    settings: CropSettings,
    checkpoint: Optional[Callable[[], None]] = None,
) -> CropResult:
    if settings.apply_to_all_pages:
        targets = list(range(1, doc.page_count + 1))
    else:
        beyond = [p for p in settings.selected_pages if p > doc.page_count]
        if beyond:
            raise PageIndexOutOfRange(
                f"Selected page {beyond[0]} is outside 1..{doc.page_count}",
                detail={"page": beyond[0], "pageCount": doc.page_count},
            )
        targets = settings.selected_pages

    previews: list[CropPage] = []
    reductions = []
    for number in targets:
        if checkpoint:
            checkpoint()
        page = doc.get_page(number).raw
        before = fitz.Rect(page.rect)

        target = crop_rect(page, settings)
        if target is None:
            logger.debug(f"Page {number}: nothing to crop to, left unchanged")
            continue
        clamped = target & before
        if clamped.is_empty or clamped.width < 1 or clamped.height < 1:
            logger.warning(f"Page {number}: crop area lies outside the page, left unchanged")
            continue

        # Page coordinates are relative to the current crop box
        offset = page.cropbox_position
        page.set_cropbox(clamped + (offset.x, offset.y, offset.x, offset.y))

        reduction = round((1 - clamped.get_area() / before.get_area()) * 100, 2)
        reductions.append(reduction)
        if len(previews) < MAX_PREVIEW_PAGES:
            previews.append(CropPage(
                page_number=number,
                original_size=_dimensions(before),
                cropped_size=_dimensions(clamped),
                reduction_percentage=reduction,
                crop_area=BoundingBox.from_rect(clamped),
            ))

    logger.info(f"Cropped {len(reductions)} of {len(targets)} targeted pages")
    return CropResult(
        pages_processed=len(reductions),
        original_dimensions=previews[0].original_size if previews else None,
        cropped_dimensions=previews[0].cropped_size if previews else None,
        crop_reduction=round(sum(reductions) / len(reductions), 2) if reductions else 0.0,
        preview_pages=previews,
    )
