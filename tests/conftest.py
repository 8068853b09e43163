"""
Shared fixtures: small PDFs synthesized with PyMuPDF, and engines wired
with temporary storage.
"""

from __future__ import annotations

import fitz  # PyMuPDF
import pytest

from pdfprodigy.audit import AuditLog
from pdfprodigy.config import EngineConfig
from pdfprodigy.engine import ProdigyEngine


def make_pdf(pages: list[list[str]], metadata: dict | None = None) -> bytes:
    """One page per entry; each string becomes a line 30pt below the last."""
    doc = fitz.open()
    for lines in pages:
        page = doc.new_page()
        for i, line in enumerate(lines):
            page.insert_text((72, 120 + 30 * i), line, fontsize=12)
    if metadata:
        doc.set_metadata(metadata)
    data = doc.tobytes()
    doc.close()
    return data


def make_image_pdf(with_text: bool = False) -> bytes:
    """One page holding a grey image, optionally with a line of text."""
    doc = fitz.open()
    page = doc.new_page()
    pix = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, 40, 40), 0)
    pix.clear_with(180)
    page.insert_image(fitz.Rect(100, 200, 300, 400), pixmap=pix)
    if with_text:
        page.insert_text((72, 120), "Figure one shows the layout", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


THREE_PAGES = [
    ["Alpha introduction covers project scope", "Budget owners approve every milestone"],
    ["Bravo section lists vendor contracts", "Delivery windows follow quarterly reviews"],
    ["Charlie appendix records meeting minutes", "Signatures confirm final acceptance terms"],
]


@pytest.fixture
def text_pdf() -> bytes:
    return make_pdf(THREE_PAGES, metadata={"title": "Quarterly Plan", "author": "Records Office"})


@pytest.fixture
def ssn_pdf() -> bytes:
    return make_pdf([
        ["Employee record", "SSN: 123-45-6789", "Contact: jane.doe@example.com"],
        ["Card on file 4111 1111 1111 1111", "Invalid SSN 000-12-3456"],
    ], metadata={"title": "Personnel File"})


@pytest.fixture
def image_pdf() -> bytes:
    return make_image_pdf()


@pytest.fixture
def compare_pair() -> tuple[bytes, bytes]:
    """A and a copy of A with its second page removed."""
    original = make_pdf(THREE_PAGES)
    doc = fitz.open(stream=original, filetype="pdf")
    doc.delete_page(1)
    revised = doc.tobytes()
    doc.close()
    return original, revised


@pytest.fixture
def missing_xref_pdf(text_pdf) -> bytes:
    """The cross-reference table cut out; startxref points at nothing."""
    start = text_pdf.index(b"\nxref")
    end = text_pdf.index(b"trailer", start)
    return text_pdf[:start] + text_pdf[end:]


@pytest.fixture
def orphan_pdf(text_pdf) -> bytes:
    """Page 3 still exists as an object but is no longer in the page tree."""
    doc = fitz.open(stream=text_pdf, filetype="pdf")
    pages_xref = int(doc.xref_get_key(doc.pdf_catalog(), "Pages")[1].split()[0])
    kept = " ".join(f"{doc[i].xref} 0 R" for i in range(2))
    doc.xref_set_key(pages_xref, "Kids", f"[{kept}]")
    doc.xref_set_key(pages_xref, "Count", "2")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        workers=2,
        db_path=str(tmp_path / "archive.sqlite"),
        log_level="WARNING",
    )


@pytest.fixture
def engine(engine_config):
    eng = ProdigyEngine(engine_config)
    yield eng
    eng.shutdown()
