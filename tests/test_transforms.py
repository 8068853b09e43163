"""
Tests for OCR, protection, page numbering and cropping.
"""

from __future__ import annotations

import fitz  # PyMuPDF
import pytest

from pdfprodigy.document import Document
from pdfprodigy.errors import OcrUnavailable, PageIndexOutOfRange
from pdfprodigy.models import JobKind, PageSource
from pdfprodigy.ocr import OcrEngine, PageText, RecognizedWord
from pdfprodigy.settings import parse_settings
from pdfprodigy.transforms import (
    add_page_numbers,
    crop,
    format_number,
    numbered_pages,
    protect,
    to_alpha,
    to_points,
    to_roman,
)


def settings_for(kind: JobKind, **raw):
    return parse_settings(kind, raw)


# ═══════════════════════════════════════════════════════════════════════════════
# OCR
# ═══════════════════════════════════════════════════════════════════════════════


class TestOcrEngine:
    """Test native reads, OCR dispatch and the invisible text layer."""

    def test_native_pages_skip_ocr(self, text_pdf):
        engine = OcrEngine(settings_for(JobKind.OCR))
        with Document.load(text_pdf) as doc:
            result = engine.run(doc)
        assert result.total_pages == 3
        assert all(p.source == PageSource.NATIVE for p in result.pages)
        assert result.confidence == 100
        assert "Bravo section lists vendor contracts" in result.extracted_text
        assert result.words_extracted == 30
        assert result.detected_languages == ["en"]

    def test_image_page_needs_ocr(self, text_pdf, image_pdf):
        engine = OcrEngine(settings_for(JobKind.OCR))
        with Document.load(image_pdf) as doc:
            assert engine.needs_ocr(doc, 1)
        with Document.load(text_pdf) as doc:
            assert not engine.needs_ocr(doc, 1)
        forced = OcrEngine(settings_for(JobKind.OCR, force=True))
        with Document.load(text_pdf) as doc:
            assert forced.needs_ocr(doc, 1)

    def test_missing_tesseract(self, image_pdf, monkeypatch):
        def no_tesseract(self, *args, **kwargs):
            raise RuntimeError("No OCR support: TESSDATA_PREFIX not set")

        monkeypatch.setattr(fitz.Page, "get_textpage_ocr", no_tesseract)
        engine = OcrEngine(settings_for(JobKind.OCR))
        with Document.load(image_pdf) as doc:
            with pytest.raises(OcrUnavailable):
                engine.run(doc)

    def test_text_layer_is_invisible_but_searchable(self, image_pdf, monkeypatch):
        words = [
            RecognizedWord("Scanned", fitz.Rect(100, 250, 160, 264)),
            RecognizedWord("invoice", fitz.Rect(165, 250, 220, 264)),
        ]

        def fake_recognize(self, doc, number):
            return PageText(PageSource.OCR, "Scanned invoice", words)

        monkeypatch.setattr(OcrEngine, "recognize", fake_recognize)
        engine = OcrEngine(settings_for(JobKind.OCR))
        with Document.load(image_pdf) as doc:
            result = engine.run(doc)
            output = doc.serialize()

        assert result.pages[0].source == PageSource.OCR
        assert result.pages[0].words == 2
        assert result.confidence == 100
        assert result.extracted_text == "Scanned invoice"
        with Document.load(output) as doc:
            text = doc.page_text(1)
        assert "Scanned" in text
        assert "invoice" in text

    def test_forced_ocr_keeps_single_text_layer(self, text_pdf, monkeypatch):
        words = [RecognizedWord("Alpha", fitz.Rect(72, 100, 110, 114))]
        monkeypatch.setattr(
            OcrEngine, "recognize",
            lambda self, doc, number: PageText(PageSource.OCR, "Alpha", words),
        )
        engine = OcrEngine(settings_for(JobKind.OCR, force=True))
        with Document.load(text_pdf) as doc:
            before = [doc.page_text(n) for n in range(1, 4)]
            result = engine.run(doc)
            output = doc.serialize()

        assert all(p.source == PageSource.OCR for p in result.pages)
        with Document.load(output) as doc:
            assert [doc.page_text(n) for n in range(1, 4)] == before
            assert doc.page_text(1).count("Alpha") == 1

    def test_text_only_leaves_document(self, image_pdf, monkeypatch):
        words = [RecognizedWord("Scanned", fitz.Rect(100, 250, 160, 264))]
        monkeypatch.setattr(
            OcrEngine, "recognize",
            lambda self, doc, number: PageText(PageSource.OCR, "Scanned", words),
        )
        engine = OcrEngine(settings_for(JobKind.OCR, outputFormat="text_only"))
        with Document.load(image_pdf) as doc:
            result = engine.run(doc)
            assert doc.extract_words(1) == []
        assert result.output_format == "text_only"
        assert result.words_extracted == 1

    def test_confidence_heuristic(self):
        page = PageText(PageSource.OCR, "", [
            RecognizedWord("word", fitz.Rect()),
            RecognizedWord("~~", fitz.Rect()),
        ])
        assert page.confidence == 50
        assert PageText(PageSource.OCR, "", []).confidence == 0

    def test_flattened_layout(self, text_pdf):
        engine = OcrEngine(settings_for(JobKind.OCR, preserveLayout=False))
        with Document.load(text_pdf) as doc:
            result = engine.run(doc)
        first_page = result.extracted_text.split("\n\n")[0]
        assert "\n" not in first_page


# ═══════════════════════════════════════════════════════════════════════════════
# PROTECT
# ═══════════════════════════════════════════════════════════════════════════════


class TestProtect:
    def test_user_password(self, text_pdf):
        settings = settings_for(
            JobKind.PROTECT,
            enableUserPassword=True, userPassword="open-sesame",
            encryptionLevel="aes256",
            permissions={"allowPrinting": False},
        )
        with Document.load(text_pdf) as doc:
            result = protect(doc, settings)
            output = doc.serialize()

        assert result.protection_applied == ["userPassword", "permissions", "encryption:aes256"]
        locked = fitz.open(stream=output, filetype="pdf")
        try:
            assert locked.needs_pass
            assert not locked.authenticate("wrong")
            assert locked.authenticate("open-sesame")
            assert locked.page_count == 3
        finally:
            locked.close()

    def test_random_owner_password(self, text_pdf):
        settings = settings_for(JobKind.PROTECT, enableUserPassword=True, userPassword="u")
        with Document.load(text_pdf) as doc:
            protect(doc, settings)
            first = doc.security.owner_password
        with Document.load(text_pdf) as doc:
            protect(doc, settings)
            second = doc.security.owner_password
        assert len(first) >= 24
        assert first != second

    def test_owner_password_only(self, text_pdf):
        settings = settings_for(JobKind.PROTECT, enableOwnerPassword=True, ownerPassword="boss")
        with Document.load(text_pdf) as doc:
            result = protect(doc, settings)
            assert doc.security.user_password == ""
        assert result.protection_applied == ["ownerPassword", "permissions", "encryption:aes128"]


# ═══════════════════════════════════════════════════════════════════════════════
# PAGE NUMBERS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPageNumbers:
    """Test label formatting, page selection and stamping."""

    def test_formats(self):
        assert to_roman(4) == "iv"
        assert to_roman(1994) == "mcmxciv"
        assert to_alpha(1) == "a"
        assert to_alpha(26) == "z"
        assert to_alpha(28) == "ab"
        assert format_number(9, "roman_upper") == "IX"
        assert format_number(3, "alpha_upper") == "C"
        assert format_number(12, "numeric") == "12"

    def test_page_selection(self):
        s = settings_for(JobKind.PAGE_NUMBER, skipFirstPage=True, skipLastPage=True)
        assert numbered_pages(5, s) == [2, 3, 4]
        s = settings_for(JobKind.PAGE_NUMBER, pageRange={"enabled": True, "start": 2, "end": 9})
        assert numbered_pages(4, s) == [2, 3, 4]

    def test_range_beyond_document(self):
        s = settings_for(JobKind.PAGE_NUMBER, pageRange={"enabled": True, "start": 7, "end": 9})
        with pytest.raises(PageIndexOutOfRange):
            numbered_pages(3, s)

    def test_stamps_labels(self, text_pdf):
        settings = settings_for(
            JobKind.PAGE_NUMBER,
            prefix="Page ", suffix=" of 3", position="top_right", fontFamily="Times",
        )
        with Document.load(text_pdf) as doc:
            result = add_page_numbers(doc, settings)
            output = doc.serialize()

        assert result.pages_numbered == 3
        assert result.labels == ["Page 1 of 3", "Page 2 of 3", "Page 3 of 3"]
        with Document.load(output) as doc:
            assert "Page 2 of 3" in doc.page_text(2)

    def test_numbering_counts_numbered_pages_only(self, text_pdf):
        settings = settings_for(
            JobKind.PAGE_NUMBER, skipFirstPage=True, startNumber=1, format="roman_lower",
        )
        with Document.load(text_pdf) as doc:
            result = add_page_numbers(doc, settings)
        assert result.labels == ["i", "ii"]


# ═══════════════════════════════════════════════════════════════════════════════
# CROP
# ═══════════════════════════════════════════════════════════════════════════════


class TestCrop:
    """Test crop methods and clamping."""

    def test_manual(self, text_pdf):
        settings = settings_for(JobKind.CROP, cropArea={"x": 50, "y": 50, "width": 400, "height": 600})
        with Document.load(text_pdf) as doc:
            result = crop(doc, settings)
            output = doc.serialize()

        assert result.pages_processed == 3
        assert result.cropped_dimensions.width == 400
        assert result.cropped_dimensions.height == 600
        assert len(result.preview_pages) == 3
        with Document.load(output) as doc:
            page = doc.get_page(2)
            assert page.width == pytest.approx(400)
            assert page.height == pytest.approx(600)

    def test_auto_margins(self, text_pdf):
        settings = settings_for(
            JobKind.CROP, cropMethod="auto_margins",
            margins={"top": 1, "bottom": 1, "left": 1, "right": 1, "unit": "in"},
        )
        with Document.load(text_pdf) as doc:
            crop(doc, settings)
            assert doc.get_page(1).width == pytest.approx(595 - 144, abs=0.5)

    def test_content_based(self, text_pdf):
        settings = settings_for(JobKind.CROP, cropMethod="content_based", padding=5)
        with Document.load(text_pdf) as doc:
            result = crop(doc, settings)
            page = doc.get_page(1)
            assert page.height < 100
            assert "Alpha" in doc.page_text(1)
        assert result.crop_reduction > 80

    def test_selected_pages(self, text_pdf):
        settings = settings_for(
            JobKind.CROP, applyToAllPages=False, selectedPages=[2],
            cropArea={"x": 0, "y": 0, "width": 300, "height": 300},
        )
        with Document.load(text_pdf) as doc:
            result = crop(doc, settings)
            assert doc.get_page(1).width == pytest.approx(595)
            assert doc.get_page(2).width == pytest.approx(300)
        assert result.pages_processed == 1

    def test_selected_page_out_of_range(self, text_pdf):
        settings = settings_for(JobKind.CROP, applyToAllPages=False, selectedPages=[1, 8])
        with Document.load(text_pdf) as doc:
            with pytest.raises(PageIndexOutOfRange):
                crop(doc, settings)
            assert doc.get_page(1).width == pytest.approx(595)

    def test_area_outside_page_is_skipped(self, text_pdf):
        settings = settings_for(JobKind.CROP, cropArea={"x": 1000, "y": 0, "width": 100, "height": 100})
        with Document.load(text_pdf) as doc:
            result = crop(doc, settings)
        assert result.pages_processed == 0
        assert result.crop_reduction == 0.0

    def test_units(self):
        assert to_points(1, "in") == 72
        assert to_points(25.4, "mm") == pytest.approx(72)
        assert to_points(4, "px") == 3
