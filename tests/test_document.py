"""
Tests for the document adapter, the document store, locks and the audit log.
"""

from __future__ import annotations

import threading

import fitz  # PyMuPDF
import pytest

from pdfprodigy.audit import AuditLog, mask_excerpt
from pdfprodigy.document import Document
from pdfprodigy.errors import (
    CorruptDocument,
    DocumentBusy,
    DocumentNotFound,
    EncryptedDocument,
    PageIndexOutOfRange,
)
from pdfprodigy.locking import DocumentLock, LockRegistry
from pdfprodigy.models import AuditAction, BoundingBox
from pdfprodigy.storage import DocumentStore, sanitize_filename

from .conftest import make_pdf


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT ADAPTER
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocumentLoad:
    """Test loading and rejecting inputs."""

    def test_empty_bytes(self):
        with pytest.raises(CorruptDocument):
            Document.load(b"")

    def test_not_a_pdf(self):
        with pytest.raises(CorruptDocument):
            Document.load(b"this is plain text, not a document")

    def test_encrypted(self, text_pdf):
        src = fitz.open(stream=text_pdf, filetype="pdf")
        locked = src.tobytes(encryption=fitz.PDF_ENCRYPT_AES_128, user_pw="u", owner_pw="o")
        src.close()
        with pytest.raises(EncryptedDocument):
            Document.load(locked)

    def test_page_count_and_metadata(self, text_pdf):
        with Document.load(text_pdf) as doc:
            assert doc.page_count == 3
            assert doc.metadata["title"] == "Quarterly Plan"
            assert [p.number for p in doc.pages()] == [1, 2, 3]

    def test_page_index_out_of_range(self, text_pdf):
        with Document.load(text_pdf) as doc:
            with pytest.raises(PageIndexOutOfRange):
                doc.get_page(0)
            with pytest.raises(PageIndexOutOfRange) as exc:
                doc.get_page(4)
            assert exc.value.detail["pageCount"] == 3


class TestDocumentText:
    """Test word and line extraction."""

    def test_lines_in_stream_order(self, text_pdf):
        with Document.load(text_pdf) as doc:
            runs = doc.extract_text(1)
        assert [r.text for r in runs] == [
            "Alpha introduction covers project scope",
            "Budget owners approve every milestone",
        ]

    def test_offsets_and_span_bbox(self, ssn_pdf):
        with Document.load(ssn_pdf) as doc:
            run = doc.extract_text(1)[1]
        assert run.text == "SSN: 123-45-6789"
        assert run.offsets == [0, 5]
        start = run.text.index("123")
        box = run.span_bbox(start, len(run.text))
        assert box == run.words[1].bbox
        with pytest.raises(ValueError):
            run.span_bbox(4, 5)  # the space between words

    def test_text_in_region(self, ssn_pdf):
        with Document.load(ssn_pdf) as doc:
            target = doc.extract_words(1)[2]  # "SSN:"
            found = doc.text_in_region(1, target.bbox)
        assert [w.text for w in found] == ["SSN:"]

    def test_annotations(self, text_pdf):
        src = fitz.open(stream=text_pdf, filetype="pdf")
        src[0].add_text_annot((300, 300), "Reviewer note")
        data = src.tobytes()
        src.close()
        with Document.load(data) as doc:
            notes = doc.extract_annotations(1)
            assert [text for text, _ in notes] == ["Reviewer note"]
            assert doc.extract_annotations(2) == []

    def test_images(self, image_pdf):
        with Document.load(image_pdf) as doc:
            images = doc.extract_images(1)
            assert doc.extract_words(1) == []
        assert len(images) == 1
        assert images[0].bbox.as_tuple() == pytest.approx((100, 200, 300, 400))


class TestDocumentMutation:
    """Test destructive removal and serialization."""

    def test_remove_region_destroys_text(self, text_pdf):
        with Document.load(text_pdf) as doc:
            line = doc.extract_text(2)[0]
            doc.remove_region(2, line.bbox)
            output = doc.serialize()
        with Document.load(output) as doc:
            assert "Bravo" not in doc.page_text(2)
            assert "Delivery" in doc.page_text(2)
            assert "Alpha" in doc.page_text(1)

    def test_serialize_keeps_pages_and_text(self, text_pdf, ssn_pdf):
        for data in (text_pdf, ssn_pdf):
            with Document.load(data) as doc:
                count = doc.page_count
                texts = [doc.page_text(n) for n in range(1, count + 1)]
                output = doc.serialize()
            with Document.load(output) as doc:
                assert doc.page_count == count
                assert [doc.page_text(n) for n in range(1, count + 1)] == texts

    def test_scrub_metadata(self, text_pdf):
        with Document.load(text_pdf) as doc:
            doc.scrub_metadata()
            output = doc.serialize()
        with Document.load(output) as doc:
            assert "title" not in doc.metadata


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT STORE
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocumentStore:
    def test_put_get_replace_delete(self):
        store = DocumentStore()
        doc = store.put(b"%PDF-1.7 one", "contract.pdf")
        assert store.read(doc.id) == b"%PDF-1.7 one"
        assert store.exists(doc.id)

        store.replace(doc.id, b"%PDF-1.7 two", source_job="job-1")
        stored = store.get(doc.id)
        assert stored.data == b"%PDF-1.7 two"
        assert stored.info()["sourceJob"] == "job-1"
        assert stored.info()["updatedAt"] is not None

        assert store.delete(doc.id)
        assert not store.delete(doc.id)
        with pytest.raises(DocumentNotFound):
            store.get(doc.id)

    def test_replace_missing(self):
        with pytest.raises(DocumentNotFound):
            DocumentStore().replace("nope", b"")

    def test_disk_mirror_survives_restart(self, tmp_path):
        store = DocumentStore(str(tmp_path))
        doc = store.put(b"%PDF-1.7 kept", "Quarterly Report.pdf")
        store.replace(doc.id, b"%PDF-1.7 redacted", source_job="job-7")
        assert (tmp_path / f"{doc.id}.pdf").exists()

        reopened = DocumentStore(str(tmp_path))
        restored = reopened.get(doc.id)
        assert restored.data == b"%PDF-1.7 redacted"
        assert restored.filename == "Quarterly_Report.pdf"
        assert restored.source_job == "job-7"
        assert restored.created_at == doc.created_at
        assert restored.updated_at is not None

        reopened.delete(doc.id)
        assert not (tmp_path / f"{doc.id}.pdf").exists()
        assert not (tmp_path / f"{doc.id}.json").exists()

    def test_restart_without_metadata_file(self, tmp_path):
        store = DocumentStore(str(tmp_path))
        doc = store.put(b"%PDF-1.7 kept", "kept.pdf")
        (tmp_path / f"{doc.id}.json").unlink()
        assert DocumentStore(str(tmp_path)).get(doc.id).filename == f"{doc.id}.pdf"

    def test_sanitize_filename(self):
        assert sanitize_filename("../../etc/pass wd.pdf") == "pass_wd.pdf"
        assert sanitize_filename("") == "document.pdf"
        assert sanitize_filename("a<b>.pdf") == "a_b_.pdf"


# ═══════════════════════════════════════════════════════════════════════════════
# LOCKS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocumentLock:
    def test_second_writer_is_busy(self):
        lock = DocumentLock("d1")
        lock.acquire_write("job-a", timeout=1)
        with pytest.raises(DocumentBusy):
            lock.acquire_write("job-b", timeout=1)
        lock.release_write("job-a")
        lock.acquire_write("job-b", timeout=1)
        assert lock.writer == "job-b"

    def test_reader_times_out_behind_writer(self):
        lock = DocumentLock("d1")
        lock.acquire_write("job-a", timeout=1)
        with pytest.raises(DocumentBusy):
            lock.acquire_read(timeout=0.05)

    def test_writer_times_out_behind_reader(self):
        lock = DocumentLock("d1")
        lock.acquire_read(timeout=1)
        with pytest.raises(DocumentBusy):
            lock.acquire_write("job-a", timeout=0.05)
        assert lock.writer is None

    def test_reader_proceeds_after_writer_releases(self):
        lock = DocumentLock("d1")
        lock.acquire_write("job-a", timeout=1)
        got_it = threading.Event()

        def reader():
            lock.acquire_read(timeout=5)
            got_it.set()

        thread = threading.Thread(target=reader)
        thread.start()
        assert not got_it.wait(0.05)
        lock.release_write("job-a")
        thread.join(5)
        assert got_it.is_set()
        assert lock.readers == 1


class TestLockRegistry:
    def test_context_managers_release(self):
        registry = LockRegistry(timeout=0.05)
        with registry.write("d1", "job-a") as lock:
            assert lock.writer == "job-a"
        with registry.read("d1") as lock:
            assert lock.readers == 1
        assert registry.get("d1").readers == 0

    def test_discard_idle_only(self):
        registry = LockRegistry()
        lock = registry.get("d1")
        lock.acquire_read(timeout=1)
        registry.discard("d1")
        assert registry.get("d1") is lock
        lock.release_read()
        registry.discard("d1")
        assert registry.get("d1") is not lock


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═══════════════════════════════════════════════════════════════════════════════


class TestAuditLog:
    def test_append_and_pop(self):
        log = AuditLog()
        log.append("j1", 1, AuditAction.REDACTED, "one")
        log.append("j1", 2, AuditAction.REDACTED, "two")
        log.append("j2", 0, AuditAction.DETECTED)
        assert [e.detail for e in log.entries("j1")] == ["one", "two"]
        assert len(log) == 3
        assert len(log.pop("j1")) == 2
        assert log.entries("j1") == []
        assert len(log) == 1

    def test_entries_are_frozen(self):
        entry = AuditLog().append("j1", 1, AuditAction.REDACTED)
        with pytest.raises(Exception):
            entry.detail = "changed"

    def test_mask_excerpt(self):
        assert mask_excerpt("123-45-6789") == "*********89"
        assert mask_excerpt("ab") == "**"
        assert mask_excerpt(" x ") == "*"


def test_make_pdf_helper_builds_pages():
    with Document.load(make_pdf([["one"], ["two"]])) as doc:
        assert doc.page_count == 2
        assert isinstance(doc.get_page(1).rect, BoundingBox)
