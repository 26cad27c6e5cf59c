"""Tests for text extraction and object storage."""
import io

import pytest
from docx import Document as DocxDocument

from docuchat.exceptions import ExtractionError, FileTypeNotSupportedError, StorageError
from docuchat.services.document_processor import DocumentProcessor, get_file_type


class TestDocumentProcessor:
    def test_get_file_type(self):
        assert get_file_type("Report.PDF") == "pdf"
        assert get_file_type("notes") == ""

    def test_validate_file_type(self, document_processor):
        assert document_processor.validate_file_type("notes.md") == "md"
        with pytest.raises(FileTypeNotSupportedError):
            document_processor.validate_file_type("image.png")

    def test_extract_text_pages(self, document_processor):
        extracted = document_processor.extract(b"page one\fpage two\fpage three", "txt")

        assert extracted.page_count == 3
        assert "page two" in extracted.text

    def test_extract_text_without_form_feeds(self, document_processor):
        extracted = document_processor.extract("Plain text with ünïcode".encode(), ".md")

        assert extracted.page_count == 1
        assert extracted.text == "Plain text with ünïcode"

    def test_extract_docx(self, document_processor):
        document = DocxDocument()
        document.add_paragraph("First paragraph")
        document.add_paragraph("Second paragraph")
        buffer = io.BytesIO()
        document.save(buffer)

        extracted = document_processor.extract(buffer.getvalue(), "docx")

        assert "First paragraph" in extracted.text
        assert "Second paragraph" in extracted.text
        assert extracted.page_count == 1

    def test_invalid_pdf_raises_extraction_error(self, document_processor):
        with pytest.raises(ExtractionError):
            document_processor.extract(b"not a pdf", "pdf")

    def test_disallowed_extension(self):
        processor = DocumentProcessor(allowed_extensions=["txt"])
        with pytest.raises(FileTypeNotSupportedError):
            processor.extract(b"x", "md")


class TestLocalObjectStorage:
    @pytest.mark.asyncio
    async def test_upload_fetch_delete(self, storage):
        stored = await storage.upload(b"hello", "notes.txt")

        assert stored.url.startswith("file://")
        assert stored.public_id.endswith(".txt")
        assert await storage.fetch(stored.url) == b"hello"

        await storage.delete(stored.public_id)
        with pytest.raises(StorageError):
            await storage.fetch(stored.url)

    @pytest.mark.asyncio
    async def test_delete_missing_is_not_an_error(self, storage):
        await storage.delete("missing.txt")

    @pytest.mark.asyncio
    async def test_rejects_path_traversal(self, storage):
        with pytest.raises(StorageError):
            await storage.delete("../outside.txt")
