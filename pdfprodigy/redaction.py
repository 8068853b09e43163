"""
Redaction Engine
================
Destroys sensitive content and proves it is gone.

Per job:
    1. Range-check manual regions (nothing is touched on failure)
    2. Scan page by page, turn findings into regions
    3. Merge overlapping regions on the same page (transitive bbox union)
    4. Remove the content under each region, then paint the fill style
    5. Rewrite the affected pages once per security-level pass
    6. Re-extract text under every region; any survivor fails the job
    7. One audit entry per region; scrub metadata unless preserved
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from .audit import AuditLog, mask_excerpt
from .document import Document, FillStyle
from .errors import IncompleteRedaction, PageIndexOutOfRange
from .models import (
    AuditAction,
    BoundingBox,
    Category,
    Finding,
    FindingKind,
    RedactionRegion,
    RedactionResult,
    RegionSource,
    utcnow,
)
from .scanner import Ruleset, scan_page
from .settings import RedactSettings, hex_to_rgb

logger = logging.getLogger(__name__)

SOURCE_PRIORITY = [
    RegionSource.MANUAL,
    RegionSource.KEYWORD,
    RegionSource.PATTERN,
    RegionSource.AUTO,
]


@dataclass
class PendingRegion:
    """A region before it is applied; tracks what it covers for the audit."""
    page: int
    bbox: BoundingBox
    sources: set[RegionSource] = field(default_factory=set)
    categories: list[Category] = field(default_factory=list)
    excerpts: list[str] = field(default_factory=list)

    @property
    def source(self) -> RegionSource:
        return next(s for s in SOURCE_PRIORITY if s in self.sources)

    def absorb(self, other: "PendingRegion"):
        self.bbox = self.bbox.union(other.bbox)
        self.sources |= other.sources
        for category in other.categories:
            if category not in self.categories:
                self.categories.append(category)
        self.excerpts.extend(other.excerpts)


def merge_regions(regions: list[PendingRegion]) -> list[PendingRegion]:
    """
    Merge overlapping regions page by page until no two intersect.
    Output keeps page order, then the order of each cluster's first member.
    """
    merged: list[PendingRegion] = []
    for region in regions:
        current = PendingRegion(
            page=region.page,
            bbox=region.bbox,
            sources=set(region.sources),
            categories=list(region.categories),
            excerpts=list(region.excerpts),
        )
        # Absorb every existing region the growing box touches
        changed = True
        while changed:
            changed = False
            for other in list(merged):
                if other.page == current.page and other.bbox.intersects(current.bbox):
                    merged.remove(other)
                    other.absorb(current)
                    current = other
                    changed = True
        merged.append(current)
    merged.sort(key=lambda r: r.page)
    return merged


def region_from_finding(finding: Finding, ruleset: Ruleset) -> PendingRegion:
    return PendingRegion(
        page=finding.page,
        bbox=finding.bbox,
        sources={ruleset.source_for(finding.category)},
        categories=[finding.category] if finding.category else [],
        excerpts=[finding.content] if finding.kind == FindingKind.TEXT else [],
    )


def region_type(region: RedactionRegion) -> str:
    return region.categories[0].value if region.categories else region.source.value


def fill_style(settings: RedactSettings) -> FillStyle:
    style = settings.redaction_style
    return FillStyle(
        fill_color=hex_to_rgb(style.fill_color),
        border_color=hex_to_rgb(style.border_color),
        border_width=style.border_width,
        opacity=style.opacity / 100,
        pattern=style.pattern,
    )


class RedactionEngine:
    """Runs one redaction job against a loaded, write-locked document."""

    def __init__(self, audit: AuditLog):
        self.audit = audit

    def manual_regions(self, doc: Document, settings: RedactSettings) -> list[PendingRegion]:
        """Range-check and clip manual regions before any page is touched."""
        regions = []
        for area in settings.manual_regions:
            if area.page > doc.page_count:
                raise PageIndexOutOfRange(
                    f"Manual region targets page {area.page} but the document has "
                    f"{doc.page_count} pages",
                    detail={"page": area.page, "pageCount": doc.page_count},
                )
            page_rect = doc.get_page(area.page).rect
            x1 = min(area.x + area.width, page_rect.x1)
            y1 = min(area.y + area.height, page_rect.y1)
            if area.x >= x1 or area.y >= y1:
                logger.warning(f"Manual region on page {area.page} lies outside the page")
                continue
            regions.append(PendingRegion(
                page=area.page,
                bbox=BoundingBox(x0=area.x, y0=area.y, x1=x1, y1=y1),
                sources={RegionSource.MANUAL},
            ))
        return regions

    def redact(
        self,
        doc: Document,
        settings: RedactSettings,
        ruleset: Ruleset,
        job_id: str,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> RedactionResult:
        manual = self.manual_regions(doc, settings)
        style = fill_style(settings)
        applied: list[PendingRegion] = []

        for number in range(1, doc.page_count + 1):
            if checkpoint:
                checkpoint()

            pending = [r for r in manual if r.page == number]
            if not ruleset.is_empty:
                pending.extend(
                    region_from_finding(f, ruleset)
                    for f in scan_page(doc, number, ruleset)
                )
            if not pending:
                continue

            page_regions = merge_regions(pending)
            doc.remove_regions(number, [r.bbox for r in page_regions])
            for region in page_regions:
                doc.draw_fill(number, region.bbox, style)
            applied.extend(page_regions)
            logger.info(f"Page {number}: removed content under {len(page_regions)} regions")

        touched = sorted({r.page for r in applied})
        if touched:
            for _ in range(settings.passes):
                if checkpoint:
                    checkpoint()
                doc.rewrite(touched)

        self.verify(doc, applied)

        now = utcnow()
        regions = []
        for region in applied:
            regions.append(RedactionRegion(
                page=region.page,
                bbox=region.bbox,
                source=region.source,
                categories=region.categories,
                applied_at=now,
            ))
            self.audit.append(job_id, region.page, AuditAction.REDACTED, json.dumps({
                "categories": [c.value for c in region.categories],
                "source": region.source.value,
                "bbox": [round(v, 2) for v in region.bbox.as_tuple()],
                "excerpt": " | ".join(mask_excerpt(e) for e in region.excerpts),
            }))

        scrubbed = False
        if not settings.preserve_metadata:
            doc.scrub_metadata()
            scrubbed = True

        by_type = Counter(region_type(r) for r in regions)
        logger.info(
            f"Redaction complete: {len(regions)} regions on {len(touched)} pages, "
            f"{settings.passes} rewrite passes"
        )
        return RedactionResult(
            pages_processed=doc.page_count,
            total_redactions=len(regions),
            redactions_by_type=dict(by_type),
            regions=regions,
            security_level=settings.security_level,
            passes=settings.passes,
            metadata_scrubbed=scrubbed,
            verified=True,
        )

    def verify(self, doc: Document, regions: list[PendingRegion]):
        """Fail the job if any text survives under a redacted region."""
        for region in regions:
            residue = doc.text_in_region(region.page, region.bbox)
            if residue:
                raise IncompleteRedaction(
                    f"{len(residue)} words remain under a redacted region on page "
                    f"{region.page}",
                    detail={"page": region.page, "bbox": list(region.bbox.as_tuple())},
                )
