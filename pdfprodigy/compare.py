"""
Comparison Engine
=================
Diffs an original document (A) against a revised one (B).

Pipeline:
    1. Tokenize every page into words, dropping headers, footers and page
       numbers when the ignore options say so
    2. Align pages: position by position, or (structure-aware) by an LCS
       over page fingerprints so one inserted page does not cascade
    3. Word-level LCS diff inside each aligned page pair
    4. Pair deleted and added runs that are near-identical into movements
    5. Drop runs shorter than the sensitivity threshold, sort by page and
       position

The diff itself never touches either document. Highlights are rendered
onto a fresh copy of B afterwards.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Callable, Iterator, Optional

import fitz  # PyMuPDF

from .document import Document, union_all
from .models import BoundingBox, ComparisonResult, DiffRecord, DiffType, Location
from .settings import CompareSettings, hex_to_rgb

logger = logging.getLogger(__name__)

# Lines whose centre falls in the top/bottom band count as header/footer
HEADER_BAND = 0.08

# Above this many cells the word diff switches to difflib
LCS_CELL_LIMIT = 1_000_000

PREVIEW_CHARS = 200

_ROMAN = r"M{0,3}(?:CM|CD|D?C{0,3})(?:XC|XL|L?X{0,3})(?:IX|IV|V?I{0,3})"
PAGE_NUMBER_LINE = re.compile(
    rf"^[-\s]*(?:page\s+)?(?:\d+|(?=[MDCLXVI])({_ROMAN}))"
    rf"(?:\s*(?:of|/)\s*\d+)?[-\s]*$",
    re.IGNORECASE,
)

TYPE_CONFIDENCE = {
    DiffType.ADDITION: 100,
    DiffType.DELETION: 100,
    DiffType.MODIFICATION: 90,
}


# ─── Page content ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Token:
    key: str
    text: str
    bbox: Optional[BoundingBox]


@dataclass
class PageContent:
    number: int
    tokens: list[Token] = field(default_factory=list)
    images: list[BoundingBox] = field(default_factory=list)

    @property
    def keys(self) -> list[str]:
        return [t.key for t in self.tokens]

    @property
    def fingerprint(self) -> Counter:
        return Counter(self.keys)

    @property
    def bbox(self) -> Optional[BoundingBox]:
        boxes = [t.bbox for t in self.tokens if t.bbox is not None] + self.images
        return union_all(boxes) if boxes else None

    @property
    def preview(self) -> str:
        return _preview(self.tokens)


def is_page_number(text: str) -> bool:
    return bool(PAGE_NUMBER_LINE.match(text.strip()))


def page_similarity(a: Counter, b: Counter) -> float:
    """Multiset Jaccard overlap of two page fingerprints."""
    if not a and not b:
        return 1.0
    shared = sum((a & b).values())
    total = sum((a | b).values())
    return shared / total if total else 0.0


def changed_chars(old: str, new: str) -> int:
    """Characters that differ between two strings."""
    if not old or not new:
        return len(old) + len(new)
    matched = sum(
        block.size
        for block in SequenceMatcher(None, old, new, autojunk=False).get_matching_blocks()
    )
    return max(len(old), len(new)) - matched


def _preview(tokens: list[Token]) -> str:
    text = " ".join(t.text for t in tokens)
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS - 3] + "..."
    return text


def _tokens_bbox(tokens: list[Token]) -> Optional[BoundingBox]:
    boxes = [t.bbox for t in tokens if t.bbox is not None]
    return union_all(boxes) if boxes else None


# ─── LCS ──────────────────────────────────────────────────────────────────────


def lcs_opcodes(a: list[str], b: list[str]) -> list[tuple[str, int, int, int, int]]:
    """
    Word-level LCS diff in difflib opcode form:
    (tag, i1, i2, j1, j2) with tag in equal/delete/insert/replace.
    """
    n, m = len(a), len(b)

    prefix = 0
    while prefix < n and prefix < m and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while (suffix < n - prefix and suffix < m - prefix
           and a[n - 1 - suffix] == b[m - 1 - suffix]):
        suffix += 1

    mid_a = a[prefix:n - suffix]
    mid_b = b[prefix:m - suffix]

    if len(mid_a) * len(mid_b) > LCS_CELL_LIMIT:
        matcher = SequenceMatcher(None, a, b, autojunk=False)
        return matcher.get_opcodes()

    steps = _lcs_steps(mid_a, mid_b)

    opcodes = []
    if prefix:
        opcodes.append(("equal", 0, prefix, 0, prefix))

    i, j = prefix, prefix
    pos = 0
    while pos < len(steps):
        if steps[pos] == "=":
            start_i, start_j = i, j
            while pos < len(steps) and steps[pos] == "=":
                i += 1
                j += 1
                pos += 1
            opcodes.append(("equal", start_i, i, start_j, j))
            continue
        start_i, start_j = i, j
        while pos < len(steps) and steps[pos] != "=":
            if steps[pos] == "-":
                i += 1
            else:
                j += 1
            pos += 1
        if i > start_i and j > start_j:
            tag = "replace"
        elif i > start_i:
            tag = "delete"
        else:
            tag = "insert"
        opcodes.append((tag, start_i, i, start_j, j))

    if suffix:
        opcodes.append(("equal", n - suffix, n, m - suffix, m))
    return opcodes


def _lcs_steps(a: list[str], b: list[str]) -> list[str]:
    """Edit script: '=' keep, '-' drop from a, '+' take from b."""
    n, m = len(a), len(b)
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        row, below = table[i], table[i + 1]
        item = a[i]
        for j in range(m - 1, -1, -1):
            if item == b[j]:
                row[j] = below[j + 1] + 1
            else:
                row[j] = below[j] if below[j] >= row[j + 1] else row[j + 1]

    steps = []
    i = j = 0
    while i < n and j < m:
        if a[i] == b[j]:
            steps.append("=")
            i += 1
            j += 1
        elif table[i + 1][j] >= table[i][j + 1]:
            steps.append("-")
            i += 1
        else:
            steps.append("+")
            j += 1
    steps.extend("-" * (n - i))
    steps.extend("+" * (m - j))
    return steps


def align_pages(
    prints_a: list[Counter],
    prints_b: list[Counter],
    threshold: float,
) -> list[tuple[int, int]]:
    """
    LCS over pages where two pages are 'equal' when their similarity
    reaches the threshold. Returns matched (index_a, index_b) pairs, 0-based.
    """
    n, m = len(prints_a), len(prints_b)
    similar = [
        [page_similarity(pa, pb) >= threshold for pb in prints_b]
        for pa in prints_a
    ]
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        for j in range(m - 1, -1, -1):
            if similar[i][j]:
                table[i][j] = table[i + 1][j + 1] + 1
            else:
                table[i][j] = max(table[i + 1][j], table[i][j + 1])

    pairs = []
    i = j = 0
    while i < n and j < m:
        if similar[i][j] and table[i][j] == table[i + 1][j + 1] + 1:
            pairs.append((i, j))
            i += 1
            j += 1
        elif table[i + 1][j] >= table[i][j + 1]:
            i += 1
        else:
            j += 1
    return pairs


# ─── Engine ───────────────────────────────────────────────────────────────────


@dataclass
class Run:
    """A raw changed run before sensitivity filtering and movement pairing."""
    type: DiffType
    location_a: Optional[Location]
    location_b: Optional[Location]
    old_text: str = ""
    new_text: str = ""
    whole_page: bool = False
    image: bool = False
    ratio: float = 1.0

    @property
    def size(self) -> int:
        if self.type == DiffType.MODIFICATION:
            return changed_chars(self.old_text, self.new_text)
        return len(self.old_text) + len(self.new_text)


@dataclass
class PageDiff:
    """Runs found for one alignment step, plus its equal-token count."""
    runs: list[Run] = field(default_factory=list)
    equal_tokens: int = 0
    total_tokens: int = 0


class ComparisonEngine:
    """Compares two loaded, read-locked documents."""

    def __init__(self, settings: CompareSettings):
        self.settings = settings
        self.ignore = settings.ignore_options

    # ── Tokenizing ──

    def page_content(self, doc: Document, number: int) -> PageContent:
        page = doc.get_page(number)
        height = page.height
        content = PageContent(number=number)

        for run in doc.extract_text(number):
            _, cy = run.bbox.center
            if self.ignore.headers and cy < height * HEADER_BAND:
                continue
            if self.ignore.footers and cy > height * (1 - HEADER_BAND):
                continue
            if self.ignore.page_numbers and is_page_number(run.text):
                continue
            for word in run.words:
                content.tokens.append(Token(self._key(word.text), word.text, word.bbox))

        if not self.ignore.annotations:
            for text, bbox in doc.extract_annotations(number):
                for part in text.split():
                    content.tokens.append(Token(self._key(part), part, bbox))

        if not self.ignore.images:
            content.images = [img.bbox for img in doc.extract_images(number)]
        return content

    def _key(self, text: str) -> str:
        if self.ignore.whitespace:
            text = "".join(text.split())
        if self.ignore.case:
            text = text.casefold()
        return text

    # ── Alignment ──

    def alignment(self, doc_a: Document, doc_b: Document) -> list[tuple[Optional[int], Optional[int], bool]]:
        """
        Ordered steps (page_a, page_b, moved), 1-based, either side may be
        None for a page that exists in only one document.
        """
        n, m = doc_a.page_count, doc_b.page_count
        if not self.settings.is_structure_aware:
            return [
                (i if i <= n else None, i if i <= m else None, False)
                for i in range(1, max(n, m) + 1)
            ]

        prints_a = [self.page_content(doc_a, i).fingerprint for i in range(1, n + 1)]
        prints_b = [self.page_content(doc_b, j).fingerprint for j in range(1, m + 1)]
        matched = align_pages(prints_a, prints_b, self.settings.page_match_threshold)

        matched_a = {i for i, _ in matched}
        matched_b = {j for _, j in matched}
        moved = self._moved_pages(
            [i for i in range(n) if i not in matched_a],
            [j for j in range(m) if j not in matched_b],
            prints_a, prints_b,
        )
        moved_a = {i for i, _ in moved}
        moved_b = {j for _, j in moved}

        steps: list[tuple[Optional[int], Optional[int], bool]] = []
        anchors = matched + [(n, m)]
        prev_a = prev_b = 0
        for anchor_a, anchor_b in anchors:
            gap_a = [i for i in range(prev_a, anchor_a) if i not in moved_a]
            gap_b = [j for j in range(prev_b, anchor_b) if j not in moved_b]
            # Leftover pages inside one gap are diffed side by side
            for k in range(max(len(gap_a), len(gap_b))):
                page_a = gap_a[k] + 1 if k < len(gap_a) else None
                page_b = gap_b[k] + 1 if k < len(gap_b) else None
                steps.append((page_a, page_b, False))
            if anchor_a < n:
                steps.append((anchor_a + 1, anchor_b + 1, False))
            prev_a, prev_b = anchor_a + 1, anchor_b + 1

        steps.extend((i + 1, j + 1, True) for i, j in moved)
        return steps

    def _moved_pages(self, free_a, free_b, prints_a, prints_b) -> list[tuple[int, int]]:
        """Greedy best-first pairing of unmatched pages that are near-identical."""
        candidates = []
        for i in free_a:
            for j in free_b:
                if not prints_a[i] and not prints_b[j]:
                    continue
                score = page_similarity(prints_a[i], prints_b[j])
                if score >= self.settings.movement_threshold:
                    candidates.append((score, i, j))
        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

        pairs = []
        used_a, used_b = set(), set()
        for _, i, j in candidates:
            if i in used_a or j in used_b:
                continue
            used_a.add(i)
            used_b.add(j)
            pairs.append((i, j))
        return sorted(pairs)

    # ── Diffing ──

    def iter_page_diffs(
        self,
        doc_a: Document,
        doc_b: Document,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> Iterator[PageDiff]:
        """Lazily diff one alignment step at a time."""
        for page_a, page_b, moved in self.alignment(doc_a, doc_b):
            if checkpoint:
                checkpoint()
            content_a = self.page_content(doc_a, page_a) if page_a else None
            content_b = self.page_content(doc_b, page_b) if page_b else None

            if content_a is None:
                diff = PageDiff(runs=[self._whole_page(DiffType.ADDITION, None, content_b)])
            elif content_b is None:
                diff = PageDiff(runs=[self._whole_page(DiffType.DELETION, content_a, None)])
            else:
                diff = self.diff_page(content_a, content_b)
                if moved:
                    move = self._whole_page(DiffType.MOVEMENT, content_a, content_b)
                    move.ratio = page_similarity(content_a.fingerprint, content_b.fingerprint)
                    diff.runs.insert(0, move)
            diff.total_tokens = sum(
                len(c.tokens) for c in (content_a, content_b) if c is not None
            )
            yield diff

    def _whole_page(self, kind: DiffType, a: Optional[PageContent],
                    b: Optional[PageContent]) -> Run:
        loc_a = Location(page=a.number, bbox=a.bbox, text=a.preview) if a else None
        loc_b = Location(page=b.number, bbox=b.bbox, text=b.preview) if b else None
        return Run(
            type=kind,
            location_a=loc_a,
            location_b=loc_b,
            old_text=a.preview if a else "",
            new_text=b.preview if b else "",
            whole_page=True,
        )

    def diff_page(self, a: PageContent, b: PageContent) -> PageDiff:
        diff = PageDiff()
        for tag, i1, i2, j1, j2 in lcs_opcodes(a.keys, b.keys):
            if tag == "equal":
                diff.equal_tokens += i2 - i1
                continue
            old = a.tokens[i1:i2]
            new = b.tokens[j1:j2]
            kind = {
                "delete": DiffType.DELETION,
                "insert": DiffType.ADDITION,
                "replace": DiffType.MODIFICATION,
            }[tag]
            diff.runs.append(Run(
                type=kind,
                location_a=Location(
                    page=a.number, word_index=i1,
                    bbox=_tokens_bbox(old), text=_preview(old),
                ),
                location_b=Location(
                    page=b.number, word_index=j1,
                    bbox=_tokens_bbox(new), text=_preview(new),
                ),
                old_text=" ".join(t.text for t in old),
                new_text=" ".join(t.text for t in new),
            ))

        if not self.ignore.images:
            diff.runs.extend(self._image_runs(a, b))
        return diff

    def _image_runs(self, a: PageContent, b: PageContent) -> list[Run]:
        runs = []
        shared = min(len(a.images), len(b.images))
        for bbox in a.images[shared:]:
            runs.append(Run(
                type=DiffType.DELETION,
                location_a=Location(page=a.number, word_index=len(a.tokens), bbox=bbox, text="[image]"),
                location_b=Location(page=b.number, word_index=len(b.tokens)),
                image=True,
            ))
        for bbox in b.images[shared:]:
            runs.append(Run(
                type=DiffType.ADDITION,
                location_a=Location(page=a.number, word_index=len(a.tokens)),
                location_b=Location(page=b.number, word_index=len(b.tokens), bbox=bbox, text="[image]"),
                image=True,
            ))
        return runs

    # ── Classification ──

    def pair_movements(self, runs: list[Run]) -> list[Run]:
        """Turn deletion/addition pairs with near-identical text into movements."""
        threshold = self.settings.movement_threshold
        deletions = [r for r in runs if r.type == DiffType.DELETION and not r.whole_page and not r.image]
        additions = [r for r in runs if r.type == DiffType.ADDITION and not r.whole_page and not r.image]

        candidates = []
        for d_index, deleted in enumerate(deletions):
            old = self._key(deleted.old_text)
            for a_index, added in enumerate(additions):
                ratio = SequenceMatcher(None, old, self._key(added.new_text), autojunk=False).ratio()
                if ratio >= threshold:
                    candidates.append((ratio, d_index, a_index))
        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

        consumed: set[int] = set()
        used_d, used_a = set(), set()
        moves = []
        for ratio, d_index, a_index in candidates:
            if d_index in used_d or a_index in used_a:
                continue
            used_d.add(d_index)
            used_a.add(a_index)
            deleted, added = deletions[d_index], additions[a_index]
            consumed.update((id(deleted), id(added)))
            moves.append(Run(
                type=DiffType.MOVEMENT,
                location_a=deleted.location_a,
                location_b=added.location_b,
                old_text=deleted.old_text,
                new_text=added.new_text,
                ratio=ratio,
            ))

        result = [r for r in runs if id(r) not in consumed]
        result.extend(moves)
        return result

    def to_record(self, run: Run) -> DiffRecord:
        page = run.location_a.page if run.location_a else run.location_b.page
        if run.type == DiffType.MOVEMENT:
            confidence = round(run.ratio * 100)
        else:
            confidence = TYPE_CONFIDENCE[run.type]
        return DiffRecord(
            page=page,
            type=run.type,
            location_a=run.location_a,
            location_b=run.location_b,
            confidence=confidence,
            description=describe(run),
        )

    # ── Entry points ──

    def compare(
        self,
        doc_a: Document,
        doc_b: Document,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> list[DiffRecord]:
        return self.run(doc_a, doc_b, checkpoint).records

    def run(
        self,
        doc_a: Document,
        doc_b: Document,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> ComparisonResult:
        runs: list[Run] = []
        equal_tokens = total_tokens = 0
        for diff in self.iter_page_diffs(doc_a, doc_b, checkpoint):
            runs.extend(diff.runs)
            equal_tokens += diff.equal_tokens
            total_tokens += diff.total_tokens

        runs = self.pair_movements(runs)
        minimum = self.settings.min_change_chars
        kept = [r for r in runs if r.whole_page or r.image or r.size >= minimum]
        records = sorted((self.to_record(r) for r in kept), key=_record_order)

        similarity = 100.0 if total_tokens == 0 else round(2 * equal_tokens / total_tokens * 100, 2)

        counts = Counter(r.type for r in records)
        logger.info(
            f"Comparison complete: {len(records)} changes across "
            f"{len({r.page for r in records})} pages, similarity {similarity}%"
        )
        return ComparisonResult(
            records=records,
            total_changes=len(records),
            changes_summary={
                "additions": counts[DiffType.ADDITION],
                "deletions": counts[DiffType.DELETION],
                "modifications": counts[DiffType.MODIFICATION],
                "movements": counts[DiffType.MOVEMENT],
            },
            pages_analyzed=max(doc_a.page_count, doc_b.page_count),
            pages_with_changes=len({r.page for r in records}),
            similarity_score=min(similarity, 100.0),
            structure_aware=self.settings.is_structure_aware,
        )


def _record_order(record: DiffRecord) -> tuple[int, int]:
    location = record.location_a if record.location_a else record.location_b
    return (record.page, location.word_index if location else 0)


def describe(run: Run) -> str:
    if run.whole_page:
        if run.type == DiffType.DELETION:
            return f"Page {run.location_a.page} deleted"
        if run.type == DiffType.ADDITION:
            return f"Page {run.location_b.page} added"
        return f"Page {run.location_a.page} moved to position {run.location_b.page}"
    if run.image:
        return "Image removed" if run.type == DiffType.DELETION else "Image added"
    if run.type == DiffType.DELETION:
        return f"Deleted: '{_short(run.old_text)}'"
    if run.type == DiffType.ADDITION:
        return f"Added: '{_short(run.new_text)}'"
    if run.type == DiffType.MODIFICATION:
        return f"Changed '{_short(run.old_text)}' to '{_short(run.new_text)}'"
    return (
        f"Moved '{_short(run.old_text)}' from page {run.location_a.page} "
        f"to page {run.location_b.page}"
    )


def _short(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."


# ─── Highlights ───────────────────────────────────────────────────────────────


def render_highlights(data_b: bytes, records: list[DiffRecord],
                      settings: CompareSettings) -> bytes:
    """Annotate a copy of the revised document with one highlight per change."""
    colors = {
        DiffType.ADDITION: hex_to_rgb(settings.highlight_options.additions),
        DiffType.DELETION: hex_to_rgb(settings.highlight_options.deletions),
        DiffType.MODIFICATION: hex_to_rgb(settings.highlight_options.modifications),
        DiffType.MOVEMENT: hex_to_rgb(settings.highlight_options.movements),
    }
    with Document.load(data_b) as doc:
        added = 0
        for record in records:
            location = record.location_b
            if location is None or location.bbox is None or location.bbox.area <= 0:
                continue
            page = doc.get_page(location.page).raw
            annot = page.add_highlight_annot(fitz.Rect(location.bbox.as_tuple()))
            if annot is None:
                continue
            annot.set_colors(stroke=colors[record.type])
            annot.set_info(content=record.description, title="pdfprodigy")
            annot.update()
            added += 1
        logger.debug(f"Rendered {added} highlight annotations")
        return doc.serialize()
