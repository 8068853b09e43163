"""
OCR Engine
==========
Makes scanned pages searchable.

Pages that already carry a text layer are read natively unless ``force`` is
set. Pages whose only content is images (as reported by the scanner) go
through PyMuPDF's Tesseract bridge. With ``searchable_pdf`` output the
recognized words are written back as invisible text (render mode 3) at
their original positions; ``text_only`` leaves the document untouched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

import fitz  # PyMuPDF

from .document import Document
from .errors import OcrUnavailable
from .models import OcrPage, OcrResult, PageSource
from .scanner import Ruleset, scan_page
from .settings import OcrSettings

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500

# Invisible text font; base-14 so no font file is embedded
OCR_FONT = "helv"

_WORDLIKE = re.compile(r"\w")


@dataclass
class RecognizedWord:
    text: str
    rect: fitz.Rect


@dataclass
class PageText:
    source: PageSource
    text: str
    words: list[RecognizedWord]

    @property
    def confidence(self) -> int:
        # PyMuPDF does not expose Tesseract word confidences; count the
        # share of tokens that contain at least one word character.
        if self.source == PageSource.NATIVE:
            return 100
        if not self.words:
            return 0
        plausible = sum(1 for w in self.words if _WORDLIKE.search(w.text))
        return round(plausible / len(self.words) * 100)


def is_tesseract_error(error: Exception) -> bool:
    message = str(error).lower()
    return "tess" in message or "ocr" in message


class OcrEngine:
    """Runs one OCR job against a loaded document."""

    def __init__(self, settings: OcrSettings):
        self.settings = settings
        self._image_rules = Ruleset(include_images=True)

    def needs_ocr(self, doc: Document, number: int) -> bool:
        if self.settings.force:
            return True
        if doc.extract_words(number):
            return False
        return any(scan_page(doc, number, self._image_rules))

    def native_text(self, doc: Document, number: int) -> PageText:
        page = doc.get_page(number).raw
        words = [
            RecognizedWord(text=w.text, rect=fitz.Rect(w.bbox.as_tuple()))
            for w in doc.extract_words(number)
        ]
        return PageText(PageSource.NATIVE, page.get_text("text"), words)

    def recognize(self, doc: Document, number: int) -> PageText:
        page = doc.get_page(number).raw
        try:
            textpage = page.get_textpage_ocr(
                dpi=self.settings.dpi,
                language=self.settings.tesseract_language,
                full=True,
            )
        except RuntimeError as e:
            if is_tesseract_error(e):
                raise OcrUnavailable(
                    f"Tesseract OCR is not available: {e}",
                    detail={"language": self.settings.tesseract_language},
                ) from e
            raise

        words = [
            RecognizedWord(text=text, rect=fitz.Rect(x0, y0, x1, y1))
            for x0, y0, x1, y1, text, *_ in page.get_text("words", textpage=textpage)
            if text.strip()
        ]
        text = page.get_text("text", textpage=textpage)
        return PageText(PageSource.OCR, text, words)

    def write_text_layer(self, doc: Document, number: int, words: list[RecognizedWord]):
        """Insert recognized words as invisible text over the page image."""
        page = doc.get_page(number).raw
        for word in words:
            height = word.rect.height
            if height <= 0 or word.rect.width <= 0:
                continue
            fontsize = height * 0.85
            natural = fitz.get_text_length(word.text, fontname=OCR_FONT, fontsize=fontsize)
            if natural > word.rect.width:
                fontsize *= word.rect.width / natural
            page.insert_text(
                (word.rect.x0, word.rect.y1 - height * 0.2),
                word.text,
                fontname=OCR_FONT,
                fontsize=max(fontsize, 1),
                render_mode=3,
            )

    def run(
        self,
        doc: Document,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> OcrResult:
        pages: list[OcrPage] = []
        texts: list[str] = []
        total_words = 0
        ocr_pages = 0
        searchable = self.settings.output_format == "searchable_pdf"

        for number in range(1, doc.page_count + 1):
            if checkpoint:
                checkpoint()

            if self.needs_ocr(doc, number):
                has_native = bool(doc.extract_words(number))
                result = self.recognize(doc, number)
                ocr_pages += 1
                # a forced page keeps its own text layer; a second one would duplicate it
                if searchable and result.words and not has_native:
                    self.write_text_layer(doc, number, result.words)
                logger.info(f"Page {number}: recognized {len(result.words)} words")
            else:
                result = self.native_text(doc, number)

            text = result.text.strip()
            if not self.settings.preserve_layout:
                text = " ".join(text.split())
            texts.append(text)
            total_words += len(result.words)
            pages.append(OcrPage(
                page=number,
                source=result.source,
                words=len(result.words),
                confidence=result.confidence,
            ))

        extracted = "\n\n".join(t for t in texts if t)
        weighted = [p for p in pages if p.words]
        confidence = (
            round(sum(p.confidence * p.words for p in weighted) / sum(p.words for p in weighted))
            if weighted else 0
        )
        logger.info(
            f"OCR complete: {ocr_pages}/{doc.page_count} pages recognized, "
            f"{total_words} words"
        )
        return OcrResult(
            pages_processed=doc.page_count,
            total_pages=doc.page_count,
            pages=pages,
            extracted_text=extracted,
            text_preview=extracted[:PREVIEW_CHARS],
            detected_languages=list(self.settings.languages),
            confidence=confidence,
            characters_extracted=len(extracted),
            words_extracted=total_words,
            output_format=self.settings.output_format,
        )
