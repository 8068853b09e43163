"""
Structural Repair Engine
========================
Diagnoses damaged PDFs from their raw bytes and repairs them in stages.

Per document:
    Unknown → Diagnosed → {Repaired, PartiallyRepaired, Unrepairable}

Checks (in report order):
    - header / trailer presence
    - cross-reference table consistency (startxref → entries → "n g obj")
    - page-tree reachability of every /Type /Page object
    - Flate content stream decompressibility
    - font resource resolvability
    - image stream decodability
    - trailer /Info validity
    - trailer /Encrypt consistency (never fixable)

Levels:
    basic       header/trailer + xref rebuild
    standard    + orphan page relinking, dangling fonts, invalid metadata
    aggressive  + partial Flate salvage, undecodable images discarded
    recovery    aggressive work, only loadable pages kept, no validation
"""

from __future__ import annotations

import logging
import re
import zlib
from dataclasses import dataclass, field
from typing import Callable, Optional

import fitz  # PyMuPDF

from .audit import AuditLog
from .errors import EncryptedDocument, Unrepairable
from .models import (
    AuditAction,
    Issue,
    IssueSeverity,
    IssueType,
    RepairResult,
    RepairStatus,
)
from .settings import RepairSettings

logger = logging.getLogger(__name__)

HEADER_TRAILER = "Damaged header or trailer"
INVALID_XREF = "Invalid cross-reference table"
BROKEN_PAGE_TREE = "Broken page tree structure"
CORRUPT_CONTENT = "Corrupted page content stream"
MISSING_FONTS = "Missing or corrupted fonts"
DAMAGED_IMAGE = "Damaged image data"
INVALID_METADATA = "Missing or invalid metadata"
CORRUPT_ENCRYPTION = "Corrupted encryption dictionary"

LEVELS = ["basic", "standard", "aggressive", "recovery"]

# Minimum level at which each issue can be fixed
FIX_LEVEL = {
    HEADER_TRAILER: "basic",
    INVALID_XREF: "basic",
    BROKEN_PAGE_TREE: "standard",
    MISSING_FONTS: "standard",
    INVALID_METADATA: "standard",
    CORRUPT_CONTENT: "aggressive",
    DAMAGED_IMAGE: "aggressive",
}

_STARTXREF = re.compile(rb"startxref\s+(\d+)")
_XREF_KEYWORD = re.compile(rb"xref\s*")
_XREF_STREAM_OBJ = re.compile(rb"\d+\s+\d+\s+obj")
_REF = re.compile(r"(\d+)\s+(\d+)\s+R")
_NAMED_REF = re.compile(r"/([^\s/<>\[\]()]+)\s*(\d+)\s+(\d+)\s+R")


def level_at_least(level: str, minimum: str) -> bool:
    return LEVELS.index(level) >= LEVELS.index(minimum)


def fixable_at(issue: Issue, level: str) -> bool:
    minimum = FIX_LEVEL.get(issue.description)
    return issue.fixable and minimum is not None and level_at_least(level, minimum)


def parse_ref(value: tuple[str, str]) -> Optional[int]:
    """('xref', '12 0 R') -> 12"""
    kind, text = value
    if kind != "xref":
        return None
    m = _REF.match(text.strip())
    return int(m.group(1)) if m else None


def _get_key(doc: fitz.Document, xref: int, key: str) -> tuple[str, str]:
    try:
        return doc.xref_get_key(xref, key)
    except (RuntimeError, ValueError):
        return ("null", "null")


# ─── Raw byte checks ──────────────────────────────────────────────────────────


def header_trailer_ok(data: bytes) -> bool:
    tail = data[-2048:]
    return (
        data.startswith(b"%PDF-")
        and b"%%EOF" in tail
        and b"startxref" in tail
    )


def xref_table_ok(data: bytes) -> bool:
    """
    Follow the last startxref and check every in-use entry of a classic
    table lands on its own ``n g obj`` header. Cross-reference streams are
    accepted when startxref lands on an object.
    """
    matches = list(_STARTXREF.finditer(data))
    if not matches:
        return False
    offset = int(matches[-1].group(1))
    if offset <= 0 or offset >= len(data):
        return False

    m = _XREF_KEYWORD.match(data, offset)
    if not m:
        return bool(_XREF_STREAM_OBJ.match(data, offset)) and b"/XRef" in data[offset:offset + 4096]

    end = data.find(b"trailer", m.end())
    if end < 0:
        return False
    tokens = data[m.end():end].split()
    i = 0
    try:
        while i < len(tokens):
            start, count = int(tokens[i]), int(tokens[i + 1])
            i += 2
            for num in range(start, start + count):
                entry_offset, gen, flag = int(tokens[i]), int(tokens[i + 1]), tokens[i + 2]
                i += 3
                if flag != b"n" or num == 0:
                    continue
                header = re.compile(rb"\s*%d\s+%d\s+obj" % (num, gen))
                if entry_offset <= 0 or not header.match(data, entry_offset):
                    return False
    except (ValueError, IndexError):
        return False
    return True


# ─── Object-level checks (on an opened document) ──────────────────────────────


def orphan_pages(doc: fitz.Document) -> list[int]:
    """/Type /Page objects not reachable from the root page tree."""
    reachable = set()
    for index in range(doc.page_count):
        try:
            reachable.add(doc[index].xref)
        except (RuntimeError, ValueError):
            continue
    orphans = []
    for xref in range(1, doc.xref_length()):
        if xref in reachable:
            continue
        if _get_key(doc, xref, "Type") == ("name", "/Page"):
            orphans.append(xref)
    return orphans


def is_flate(doc: fitz.Document, xref: int) -> bool:
    return "/FlateDecode" in _get_key(doc, xref, "Filter")[1]


def flate_ok(raw: bytes) -> bool:
    try:
        zlib.decompress(raw)
        return True
    except zlib.error:
        return False


def salvage_flate(raw: bytes) -> bytes:
    """Decompress as much of a damaged Flate stream as possible."""
    inflater = zlib.decompressobj()
    out = b""
    for i in range(0, len(raw), 256):
        try:
            out += inflater.decompress(raw[i:i + 256])
        except zlib.error:
            break
    # Drop a trailing half operator
    cut = out.rfind(b"\n")
    return out[:cut + 1] if cut >= 0 else b""


def corrupt_content_streams(doc: fitz.Document) -> list[tuple[int, int]]:
    """(page number, content xref) for every undecodable Flate stream."""
    broken = []
    for index in range(doc.page_count):
        try:
            contents = doc[index].get_contents()
        except (RuntimeError, ValueError):
            continue
        for xref in contents:
            if not is_flate(doc, xref):
                continue
            try:
                raw = doc.xref_stream_raw(xref)
            except (RuntimeError, ValueError):
                raw = None
            if raw is None or not flate_ok(raw):
                broken.append((index + 1, xref))
    return broken


def font_dict(doc: fitz.Document, page_xref: int) -> tuple[Optional[int], dict[str, int]]:
    """
    Resolve a page's /Resources/Font. Returns (indirect font dict xref or
    None, {resource name: font xref}).
    """
    value = _get_key(doc, page_xref, "Resources/Font")
    holder = parse_ref(value)
    text = value[1]
    if holder is not None:
        try:
            text = doc.xref_object(holder, compressed=True)
        except (RuntimeError, ValueError):
            return holder, {}
    elif value[0] != "dict":
        return None, {}
    return holder, {name: int(num) for name, num, _gen in _NAMED_REF.findall(text)}


def dangling_fonts(doc: fitz.Document) -> list[tuple[int, str, int]]:
    """(page number, resource name, xref) for font refs that are not fonts."""
    dangling = []
    for index in range(doc.page_count):
        try:
            page_xref = doc[index].xref
        except (RuntimeError, ValueError):
            continue
        _holder, fonts = font_dict(doc, page_xref)
        for name, xref in fonts.items():
            if xref >= doc.xref_length() or _get_key(doc, xref, "Type") != ("name", "/Font"):
                dangling.append((index + 1, name, xref))
    return dangling


def damaged_images(doc: fitz.Document) -> list[tuple[int, int]]:
    """(page number, image xref) for image streams that cannot be decoded."""
    damaged = []
    seen = set()
    for index in range(doc.page_count):
        try:
            images = doc[index].get_images(full=True)
        except (RuntimeError, ValueError):
            continue
        for item in images:
            xref = item[0]
            if xref in seen or xref <= 0:
                continue
            seen.add(xref)
            try:
                raw = doc.xref_stream_raw(xref)
            except (RuntimeError, ValueError):
                raw = None
            if raw is None:
                damaged.append((index + 1, xref))
                continue
            filter_value = _get_key(doc, xref, "Filter")[1]
            if "/FlateDecode" in filter_value and not flate_ok(raw):
                damaged.append((index + 1, xref))
            elif "/DCTDecode" in filter_value and not raw.startswith(b"\xff\xd8"):
                damaged.append((index + 1, xref))
    return damaged


def metadata_invalid(doc: fitz.Document) -> bool:
    kind, value = _get_key(doc, -1, "Info")
    if kind == "null":
        return False
    if kind == "dict":
        return False
    ref = parse_ref((kind, value))
    if ref is None or ref >= doc.xref_length():
        return True
    try:
        return not doc.xref_object(ref).lstrip().startswith("<<")
    except (RuntimeError, ValueError):
        return True


def encryption_corrupt(data: bytes, doc: fitz.Document) -> bool:
    kind, value = _get_key(doc, -1, "Encrypt")
    if kind == "null":
        # /Encrypt in the trailer bytes that the parser did not honour
        return b"/Encrypt" in data[-4096:] and not doc.is_encrypted
    if kind == "dict":
        return False
    ref = parse_ref((kind, value))
    if ref is None or ref >= doc.xref_length():
        return True
    try:
        return not doc.xref_object(ref).lstrip().startswith("<<")
    except (RuntimeError, ValueError):
        return True


# ─── Diagnosis ────────────────────────────────────────────────────────────────


@dataclass
class Diagnosis:
    issues: list[Issue] = field(default_factory=list)
    page_count: int = 0
    opened: bool = True

    @property
    def keys(self) -> set[tuple[str, str]]:
        return {issue.key for issue in self.issues}


def open_pdf(data: bytes) -> Optional[fitz.Document]:
    start = data.find(b"%PDF-")
    if start > 0:
        data = data[start:]
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        logger.warning(f"PDF could not be opened even with repair: {e}")
        return None
    if doc.needs_pass:
        doc.close()
        raise EncryptedDocument("Document is password protected")
    return doc


def diagnose(data: bytes) -> Diagnosis:
    """Enumerate structural issues in raw PDF bytes."""
    diagnosis = Diagnosis()
    issues = diagnosis.issues

    if not header_trailer_ok(data):
        issues.append(Issue(
            type=IssueType.CORRUPTION,
            severity=IssueSeverity.CRITICAL if not data.startswith(b"%PDF-") else IssueSeverity.ERROR,
            description=HEADER_TRAILER,
            location="document",
            fixable=True,
        ))

    doc = open_pdf(data) if data else None
    if doc is None:
        diagnosis.opened = False
        issues.append(Issue(
            type=IssueType.CORRUPTION,
            severity=IssueSeverity.CRITICAL,
            description=INVALID_XREF,
            location="document",
            fixable=False,
        ))
        return diagnosis

    with doc:
        diagnosis.page_count = doc.page_count

        if not xref_table_ok(data) or doc.is_repaired:
            issues.append(Issue(
                type=IssueType.STRUCTURE,
                severity=IssueSeverity.ERROR,
                description=INVALID_XREF,
                location="xref",
                fixable=True,
            ))

        orphans = orphan_pages(doc)
        if orphans:
            issues.append(Issue(
                type=IssueType.STRUCTURE,
                severity=IssueSeverity.ERROR,
                description=BROKEN_PAGE_TREE,
                location=f"{len(orphans)} unreachable page objects",
                fixable=True,
            ))

        for page, xref in corrupt_content_streams(doc):
            issues.append(Issue(
                type=IssueType.CONTENT,
                severity=IssueSeverity.ERROR,
                description=CORRUPT_CONTENT,
                location=f"page {page}",
                fixable=True,
            ))

        font_pages = sorted({page for page, _name, _xref in dangling_fonts(doc)})
        for page in font_pages:
            issues.append(Issue(
                type=IssueType.CONTENT,
                severity=IssueSeverity.WARNING,
                description=MISSING_FONTS,
                location=f"page {page}",
                fixable=True,
            ))

        for page, xref in damaged_images(doc):
            issues.append(Issue(
                type=IssueType.CONTENT,
                severity=IssueSeverity.WARNING,
                description=DAMAGED_IMAGE,
                location=f"page {page}, object {xref}",
                fixable=True,
            ))

        if metadata_invalid(doc):
            issues.append(Issue(
                type=IssueType.METADATA,
                severity=IssueSeverity.WARNING,
                description=INVALID_METADATA,
                location="trailer",
                fixable=True,
            ))

        if encryption_corrupt(data, doc):
            issues.append(Issue(
                type=IssueType.SECURITY,
                severity=IssueSeverity.CRITICAL,
                description=CORRUPT_ENCRYPTION,
                location="trailer",
                fixable=False,
            ))

    logger.info(f"Diagnosis: {len(issues)} issues, {diagnosis.page_count} pages")
    return diagnosis


# ─── Repair ───────────────────────────────────────────────────────────────────


def relink_orphans(doc: fitz.Document, orphans: list[int]) -> fitz.Document:
    """Append orphaned pages to the root page tree and reload."""
    catalog = doc.pdf_catalog()
    root = parse_ref(_get_key(doc, catalog, "Pages"))
    if root is None or _get_key(doc, root, "Type") != ("name", "/Pages"):
        root = doc.get_new_xref()
        doc.update_object(root, "<</Type/Pages/Kids[]/Count 0>>")
        doc.xref_set_key(catalog, "Pages", f"{root} 0 R")
        kids: list[str] = []
        count = 0
    else:
        kids_value = _get_key(doc, root, "Kids")[1]
        kids = [f"{num} {gen} R" for num, gen in _REF.findall(kids_value)]
        count = doc.page_count

    kids.extend(f"{xref} 0 R" for xref in orphans)
    doc.xref_set_key(root, "Kids", "[" + " ".join(kids) + "]")
    doc.xref_set_key(root, "Count", str(count + len(orphans)))
    for xref in orphans:
        doc.xref_set_key(xref, "Parent", f"{root} 0 R")

    data = doc.tobytes()
    doc.close()
    return fitz.open(stream=data, filetype="pdf")


def drop_dangling_fonts(doc: fitz.Document, dangling: list[tuple[int, str, int]]):
    bad_by_page: dict[int, set[str]] = {}
    for page, name, _xref in dangling:
        bad_by_page.setdefault(page, set()).add(name)
    for page, names in bad_by_page.items():
        page_xref = doc[page - 1].xref
        holder, fonts = font_dict(doc, page_xref)
        kept = " ".join(f"/{n} {x} 0 R" for n, x in fonts.items() if n not in names)
        value = f"<<{kept}>>"
        if holder is not None:
            doc.update_object(holder, value)
        else:
            doc.xref_set_key(page_xref, "Resources/Font", value)


def salvage_content(doc: fitz.Document, broken: list[tuple[int, int]]) -> int:
    """Replace damaged content streams with their salvageable prefix."""
    blanked = 0
    for _page, xref in broken:
        raw = doc.xref_stream_raw(xref) or b""
        salvaged = salvage_flate(raw)
        if not salvaged:
            blanked += 1
        doc.update_stream(xref, salvaged)
    return blanked


class RepairEngine:
    """Runs one repair job on raw bytes."""

    def __init__(self, audit: AuditLog):
        self.audit = audit

    def repair(
        self,
        data: bytes,
        settings: RepairSettings,
        job_id: str,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> tuple[RepairResult, bytes]:
        level = settings.repair_level
        before = diagnose(data)
        for issue in before.issues:
            self.audit.append(job_id, 0, AuditAction.DETECTED,
                              f"{issue.description} ({issue.location})")

        if not before.opened:
            raise Unrepairable("Document could not be parsed; no pages recoverable")

        actions: list[str] = []
        applied: set[str] = set()
        doc = open_pdf(data)

        try:
            if not data.startswith(b"%PDF-") and data.find(b"%PDF-") > 0:
                actions.append("Removed leading garbage before the PDF header")

            if checkpoint:
                checkpoint()

            # standard: page tree, fonts, metadata
            if level_at_least(level, "standard"):
                orphans = orphan_pages(doc)
                if orphans and settings.fix_structure:
                    doc = relink_orphans(doc, orphans)
                    actions.append(f"Re-linked {len(orphans)} orphaned pages into the page tree")
                    applied.add(BROKEN_PAGE_TREE)

                dangling = dangling_fonts(doc)
                if dangling and settings.handle_missing_fonts:
                    drop_dangling_fonts(doc, dangling)
                    actions.append(f"Dropped {len(dangling)} dangling font references")
                    applied.add(MISSING_FONTS)

                if metadata_invalid(doc):
                    doc.xref_set_key(-1, "Info", "null")
                    actions.append("Reset invalid document information dictionary")
                    applied.add(INVALID_METADATA)

            # the final rewrite garbage-collects anything still outside the page tree
            unreachable = orphan_pages(doc)
            if unreachable:
                actions.append(f"Discarded {len(unreachable)} unreachable page objects")

            # aggressive: content and images
            if level_at_least(level, "aggressive"):
                broken = corrupt_content_streams(doc)
                if broken and settings.recover_content:
                    blanked = salvage_content(doc, broken)
                    actions.append(
                        f"Salvaged {len(broken) - blanked} and blanked {blanked} "
                        f"corrupted content streams"
                    )
                    applied.add(CORRUPT_CONTENT)

                images = damaged_images(doc)
                if images and settings.fix_image_corruption:
                    for page, xref in images:
                        doc[page - 1].delete_image(xref)
                    actions.append(f"Discarded {len(images)} undecodable images")
                    applied.add(DAMAGED_IMAGE)

            if level == "recovery":
                for index in reversed(range(doc.page_count)):
                    if checkpoint:
                        checkpoint()
                    try:
                        doc[index].get_text("text")
                    except (RuntimeError, ValueError):
                        doc.delete_page(index)
                        actions.append(f"Dropped unloadable page {index + 1}")

            if doc.page_count == 0:
                raise Unrepairable("Repair produced zero usable pages")

            if not settings.preserve_metadata:
                doc.set_metadata({})

            if checkpoint:
                checkpoint()

            # basic: every level rewrites header, xref and trailer
            if settings.optimize_after_repair:
                output = doc.tobytes(garbage=4, deflate=True)
            else:
                output = doc.tobytes(garbage=1)
            actions.append("Rebuilt cross-reference table and trailer")
            applied.update({HEADER_TRAILER, INVALID_XREF})
            page_count = doc.page_count
        finally:
            doc.close()

        validate = level != "recovery" and settings.validate_after_repair
        if validate:
            after = diagnose(output)
            if not after.opened or after.page_count == 0:
                raise Unrepairable("Repaired document has no usable pages")
            gone = [i for i in before.issues if i.key not in after.keys]
            fixed = [i for i in gone if fixable_at(i, level)]
            # vanished below its fix level means the rewrite dropped it, not fixed it
            remaining = list(after.issues) + [i for i in gone if not fixable_at(i, level)]
        else:
            fixed = [
                i for i in before.issues
                if i.description in applied and fixable_at(i, level)
            ]
            fixed_ids = {id(i) for i in fixed}
            remaining = [i for i in before.issues if id(i) not in fixed_ids]

        for action in actions:
            self.audit.append(job_id, 0, AuditAction.REPAIRED, action)

        status = RepairStatus.REPAIRED if not remaining else RepairStatus.PARTIALLY_REPAIRED
        logger.info(
            f"Repair ({level}): {len(fixed)}/{len(before.issues)} issues fixed, "
            f"{page_count} pages"
        )
        return RepairResult(
            success=True,
            status=status,
            repair_level=level,
            issues_found=len(before.issues),
            issues_fixed=len(fixed),
            remaining_issues=[i.description for i in remaining],
            issues=before.issues,
            repair_actions=actions,
            recovered_pages=page_count,
            validated=validate,
            original_size=len(data),
            repaired_size=len(output),
        ), output
