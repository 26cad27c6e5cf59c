"""Text extraction for PDF, DOCX, TXT and Markdown documents."""
import io
from pathlib import Path
from typing import Iterable

import pdfplumber
from docx import Document as DocxDocument

from docuchat.exceptions import ExtractionError, FileSizeExceededError, FileTypeNotSupportedError
from docuchat.models.document import ExtractedText
from docuchat.utils.logger import logger


MAX_TEXT_FILE_BYTES = 10 * 1024 * 1024

MIME_TYPES = {
    "pdf": "application/pdf",
    "txt": "text/plain",
    "md": "text/markdown",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def get_file_type(filename: str) -> str:
    """Return the lower-case extension of a filename without the dot."""
    return Path(filename or "").suffix.lower().lstrip(".")


def extract_text_from_pdf(content: bytes) -> ExtractedText:
    """
    Extract text from PDF bytes using pdfplumber.

    Args:
        content: Raw PDF bytes

    Returns:
        ExtractedText with pages joined by blank lines and the page count

    Raises:
        ExtractionError: If PDF processing fails
    """
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            page_texts = []
            for page_num, page in enumerate(pdf.pages, 1):
                try:
                    page_texts.append(page.extract_text() or "")
                except Exception as e:
                    logger.warning(f"Error extracting text from PDF page {page_num}: {str(e)}")
                    page_texts.append("")
            return ExtractedText(text="\n\n".join(page_texts).strip(), page_count=len(pdf.pages))
    except Exception as e:
        logger.error(f"Error opening PDF document: {str(e)}")
        raise ExtractionError(f"Failed to process PDF file: {str(e)}")


def extract_text_from_docx(content: bytes) -> ExtractedText:
    """
    Extract text from DOCX bytes.

    DOCX files have no fixed pagination, so the page count is always 1.
    """
    try:
        doc = DocxDocument(io.BytesIO(content))
        full_text = [p.text for p in doc.paragraphs if p.text.strip()]

        for table in doc.tables:
            for row in table.rows:
                for cell in row.cells:
                    if cell.text.strip():
                        full_text.append(cell.text)

        return ExtractedText(text="\n\n".join(full_text), page_count=1)

    except Exception as e:
        logger.error(f"Error processing DOCX document: {str(e)}")
        raise ExtractionError(f"Failed to process DOCX file: {str(e)}")


def extract_text_from_txt(content: bytes) -> ExtractedText:
    """Decode a plain text or Markdown file; form feeds separate pages."""
    if len(content) > MAX_TEXT_FILE_BYTES:
        raise FileSizeExceededError("Text file too large")

    text = content.decode("utf-8", errors="replace")
    return ExtractedText(text=text, page_count=text.count("\f") + 1)


class DocumentProcessor:
    """Handles text extraction for every supported file type."""

    def __init__(self, allowed_extensions: Iterable[str] = ("pdf", "txt", "md", "docx")):
        self.allowed_extensions = {ext.lower().lstrip(".") for ext in allowed_extensions}

    def validate_file_type(self, filename: str) -> str:
        """Validate the extension of an uploaded file and return it."""
        if not filename:
            raise FileTypeNotSupportedError("File name is required.")

        extension = get_file_type(filename)
        if extension not in self.allowed_extensions:
            raise FileTypeNotSupportedError(
                f"Unsupported file type. Supported formats: {', '.join(sorted(self.allowed_extensions))}"
            )
        return extension

    def extract(self, content: bytes, extension: str) -> ExtractedText:
        """
        Extract plain text from a document.

        Args:
            content: Raw file bytes
            extension: File extension (with or without the leading dot)

        Returns:
            ExtractedText with the document text and page count

        Raises:
            FileTypeNotSupportedError: If the extension is not supported
            ExtractionError: If parsing fails
        """
        extension = extension.lower().lstrip(".")
        if extension not in self.allowed_extensions:
            raise FileTypeNotSupportedError(f"Unsupported file type: {extension}")

        if extension == "pdf":
            result = extract_text_from_pdf(content)
        elif extension == "docx":
            result = extract_text_from_docx(content)
        elif extension in ("txt", "md"):
            result = extract_text_from_txt(content)
        else:
            raise FileTypeNotSupportedError(f"Unsupported file type: {extension}")

        logger.info(
            f"Extracted {len(result.text):,} characters from .{extension} document",
            extra={"page_count": result.page_count},
        )
        return result
