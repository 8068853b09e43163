"""
Document Model Adapter
======================
Wraps a PyMuPDF (fitz) document behind the small page/text/region API the
engines need. Coordinates are PDF points with a top-left origin, the fitz
convention, and page numbers are 1-based throughout.

Nothing here knows about jobs or locks: the processor guarantees that a
mutating call only happens while the job holds the document's write lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

import fitz  # PyMuPDF

from .errors import CorruptDocument, EncryptedDocument, PageIndexOutOfRange
from .models import BoundingBox

logger = logging.getLogger(__name__)


# ─── Value types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Word:
    """One word as laid out on the page."""
    text: str
    bbox: BoundingBox
    block: int
    line: int
    index: int

    @property
    def center(self) -> tuple[float, float]:
        return self.bbox.center


@dataclass
class TextRun:
    """
    One text line in content-stream order.

    ``text`` is the line's words joined by single spaces; ``offsets[i]`` is
    the character offset of ``words[i]`` inside ``text``.
    """
    text: str
    words: list[Word]
    offsets: list[int]

    @classmethod
    def from_words(cls, words: list[Word]) -> "TextRun":
        offsets = []
        pos = 0
        for word in words:
            offsets.append(pos)
            pos += len(word.text) + 1
        return cls(text=" ".join(w.text for w in words), words=words, offsets=offsets)

    @property
    def bbox(self) -> BoundingBox:
        return union_all(w.bbox for w in self.words)

    def words_in_span(self, start: int, end: int) -> list[Word]:
        """Words whose characters overlap text[start:end]."""
        return [
            word for word, offset in zip(self.words, self.offsets)
            if offset < end and start < offset + len(word.text)
        ]

    def span_bbox(self, start: int, end: int) -> BoundingBox:
        touched = self.words_in_span(start, end)
        if not touched:
            raise ValueError(f"Span {start}:{end} touches no words")
        return union_all(w.bbox for w in touched)


@dataclass(frozen=True)
class ImageInfo:
    xref: int
    bbox: BoundingBox
    width: int
    height: int


@dataclass
class FillStyle:
    """How a redacted region is painted after its content is removed."""
    fill_color: tuple[float, float, float] = (0.0, 0.0, 0.0)
    border_color: tuple[float, float, float] = (1.0, 0.0, 0.0)
    border_width: float = 2.0
    opacity: float = 1.0
    pattern: str = "solid"


ENCRYPTION_METHODS = {
    "standard": fitz.PDF_ENCRYPT_RC4_40,
    "high": fitz.PDF_ENCRYPT_RC4_128,
    "aes128": fitz.PDF_ENCRYPT_AES_128,
    "aes256": fitz.PDF_ENCRYPT_AES_256,
}

PERMISSION_FLAGS = {
    "allow_printing": fitz.PDF_PERM_PRINT,
    "allow_copying": fitz.PDF_PERM_COPY,
    "allow_editing": fitz.PDF_PERM_MODIFY,
    "allow_form_filling": fitz.PDF_PERM_FORM,
    "allow_annotations": fitz.PDF_PERM_ANNOTATE,
    "allow_screen_readers": fitz.PDF_PERM_ACCESSIBILITY,
    "allow_assembly": fitz.PDF_PERM_ASSEMBLE,
    "allow_high_quality_print": fitz.PDF_PERM_PRINT_HQ,
}


@dataclass
class SecurityDescriptor:
    """Encryption applied when the document is serialized."""
    encryption_level: str = "aes128"
    user_password: str = ""
    owner_password: str = ""
    permissions: dict[str, bool] = field(default_factory=dict)

    @property
    def method(self) -> int:
        return ENCRYPTION_METHODS[self.encryption_level]

    @property
    def permission_bits(self) -> int:
        bits = 0
        for name, flag in PERMISSION_FLAGS.items():
            if self.permissions.get(name, False):
                bits |= flag
        return bits


def union_all(boxes) -> BoundingBox:
    result: Optional[BoundingBox] = None
    for box in boxes:
        result = box if result is None else result.union(box)
    if result is None:
        raise ValueError("union of no boxes")
    return result


# ─── Page ─────────────────────────────────────────────────────────────────────


class Page:
    """Thin wrapper over a fitz page. Obtain through ``Document.get_page``."""

    def __init__(self, raw: fitz.Page):
        self.raw = raw

    @property
    def number(self) -> int:
        return self.raw.number + 1

    @property
    def rect(self) -> BoundingBox:
        return BoundingBox.from_rect(self.raw.rect)

    @property
    def mediabox(self) -> BoundingBox:
        return BoundingBox.from_rect(self.raw.mediabox)

    @property
    def width(self) -> float:
        return self.raw.rect.width

    @property
    def height(self) -> float:
        return self.raw.rect.height

    def __repr__(self) -> str:
        return f"<Page {self.number} {self.width:.0f}x{self.height:.0f}>"


# ─── Document ─────────────────────────────────────────────────────────────────


class Document:
    """
    A loaded PDF.

    Lifecycle: ``Document.load(data)`` → read/mutate → ``serialize()``.
    Use as a context manager to release the underlying fitz document.
    """

    def __init__(self, raw: fitz.Document):
        self.raw = raw
        self.security: Optional[SecurityDescriptor] = None

    @classmethod
    def load(cls, data: bytes) -> "Document":
        """Parse PDF bytes. Raises CorruptDocument or EncryptedDocument."""
        if not data:
            raise CorruptDocument("Document is empty")

        try:
            raw = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise CorruptDocument(f"Unable to parse PDF: {e}") from e

        if raw.needs_pass:
            raw.close()
            raise EncryptedDocument("Document is password protected")

        if raw.page_count == 0:
            raw.close()
            raise CorruptDocument("Document has no pages")

        if raw.is_repaired:
            logger.debug("PyMuPDF repaired the document while opening it")
        return cls(raw)

    def close(self):
        if not self.raw.is_closed:
            self.raw.close()

    def __enter__(self) -> "Document":
        return self

    def __exit__(self, *exc):
        self.close()

    # ── Pages ──

    @property
    def page_count(self) -> int:
        return self.raw.page_count

    def get_page(self, number: int) -> Page:
        if not 1 <= number <= self.raw.page_count:
            raise PageIndexOutOfRange(
                f"Page {number} is outside 1..{self.raw.page_count}",
                detail={"page": number, "pageCount": self.raw.page_count},
            )
        return Page(self.raw[number - 1])

    def pages(self) -> Iterator[Page]:
        for index in range(self.raw.page_count):
            yield Page(self.raw[index])

    @property
    def metadata(self) -> dict:
        return {k: v for k, v in (self.raw.metadata or {}).items() if v}

    # ── Reading ──

    def extract_words(self, number: int) -> list[Word]:
        """Words in content-stream order."""
        page = self.get_page(number).raw
        words = []
        for x0, y0, x1, y1, text, block, line, index in page.get_text("words", sort=False):
            if not text.strip():
                continue
            words.append(Word(
                text=text,
                bbox=BoundingBox(x0=x0, y0=y0, x1=max(x0, x1), y1=max(y0, y1)),
                block=block,
                line=line,
                index=index,
            ))
        return words

    def extract_text(self, number: int) -> list[TextRun]:
        """One TextRun per text line, in content-stream order."""
        runs: list[TextRun] = []
        current: list[Word] = []
        key = None
        for word in self.extract_words(number):
            word_key = (word.block, word.line)
            if current and word_key != key:
                runs.append(TextRun.from_words(current))
                current = []
            current.append(word)
            key = word_key
        if current:
            runs.append(TextRun.from_words(current))
        return runs

    def page_text(self, number: int) -> str:
        return "\n".join(run.text for run in self.extract_text(number))

    def extract_images(self, number: int) -> list[ImageInfo]:
        page = self.get_page(number).raw
        images = []
        for info in page.get_image_info(xrefs=True):
            rect = fitz.Rect(info["bbox"]) & page.rect
            if rect.is_empty:
                continue
            images.append(ImageInfo(
                xref=info.get("xref", 0),
                bbox=BoundingBox.from_rect(rect),
                width=info.get("width", 0),
                height=info.get("height", 0),
            ))
        return images

    def extract_annotations(self, number: int) -> list[tuple[str, BoundingBox]]:
        """(content, bbox) of every annotation on the page that carries text."""
        page = self.get_page(number).raw
        notes = []
        for annot in page.annots():
            content = (annot.info or {}).get("content", "").strip()
            if content:
                notes.append((content, BoundingBox.from_rect(annot.rect)))
        return notes

    def text_in_region(self, number: int, bbox: BoundingBox) -> list[Word]:
        """Words whose centre lies inside the region."""
        return [
            word for word in self.extract_words(number)
            if bbox.contains_point(*word.center)
        ]

    # ── Mutation ──

    def remove_region(self, number: int, bbox: BoundingBox):
        self.remove_regions(number, [bbox])

    def remove_regions(self, number: int, boxes: Sequence[BoundingBox]):
        """
        Destroy everything under the given boxes.

        Text operators are deleted from the content stream, overlapping image
        pixels are blanked and fully covered vector graphics are dropped.
        """
        if not boxes:
            return
        page = self.get_page(number).raw
        for bbox in boxes:
            page.add_redact_annot(fitz.Rect(bbox.as_tuple()), fill=False)
        page.apply_redactions(
            images=fitz.PDF_REDACT_IMAGE_PIXELS,
            graphics=fitz.PDF_REDACT_LINE_ART_REMOVE_IF_COVERED,
        )

    def draw_fill(self, number: int, bbox: BoundingBox, style: FillStyle):
        page = self.get_page(number).raw
        rect = fitz.Rect(bbox.as_tuple())
        shape = page.new_shape()

        shape.draw_rect(rect)
        shape.finish(
            color=None,
            fill=style.fill_color,
            fill_opacity=style.opacity,
            width=0,
        )

        step = 4.0
        if style.pattern in ("striped", "crosshatch"):
            y = rect.y0 + step
            while y < rect.y1:
                shape.draw_line((rect.x0, y), (rect.x1, y))
                y += step
        if style.pattern == "crosshatch":
            x = rect.x0 + step
            while x < rect.x1:
                shape.draw_line((x, rect.y0), (x, rect.y1))
                x += step
        if style.pattern == "dots":
            y = rect.y0 + step / 2
            while y < rect.y1:
                x = rect.x0 + step / 2
                while x < rect.x1:
                    shape.draw_circle((x, y), 0.6)
                    x += step
                y += step
        if style.pattern != "solid":
            shape.finish(
                color=style.border_color,
                fill=style.border_color if style.pattern == "dots" else None,
                width=0.5,
                stroke_opacity=style.opacity,
                fill_opacity=style.opacity,
            )

        if style.border_width > 0:
            shape.draw_rect(rect)
            shape.finish(
                color=style.border_color,
                fill=None,
                width=style.border_width,
                stroke_opacity=style.opacity,
            )
        shape.commit()

    def rewrite(self, numbers: Sequence[int]):
        """
        Sanitize the content streams of the given pages and reload the
        document from a garbage-collected, non-incremental serialization,
        so no unreferenced object keeps removed content alive.
        """
        for number in numbers:
            self.get_page(number).raw.clean_contents()
        data = self.raw.tobytes(garbage=4, deflate=True, clean=True)
        self.raw.close()
        self.raw = fitz.open(stream=data, filetype="pdf")

    def scrub_metadata(self):
        self.raw.set_metadata({})
        self.raw.del_xml_metadata()

    def serialize(self) -> bytes:
        """Full rewrite: fresh xref, unused objects dropped, streams deflated."""
        options = {"garbage": 4, "deflate": True}
        if self.security is not None:
            options.update(
                encryption=self.security.method,
                owner_pw=self.security.owner_password or None,
                user_pw=self.security.user_password or None,
                permissions=self.security.permission_bits,
            )
        return self.raw.tobytes(**options)
