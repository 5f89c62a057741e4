"""Upload validation for PDF documents."""
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

from pdfqa.exceptions import (
    ChunkLimitExceededError,
    DocumentEmptyError,
    FileSizeExceededError,
    InvalidHeaderError,
    InvalidMediaTypeError,
    NoFileError,
    PageLimitExceededError,
    PDFParseError,
    TooFewPagesError,
)
from pdfqa.services.document_processor import extract_text_from_pdf
from pdfqa.utils.logger import logger

PDF_MAGIC = b"%PDF"


@dataclass(frozen=True)
class ValidationLimits:
    """Upload limits; defaults match the documented configuration."""

    max_file_bytes: int = 10 * 1024 * 1024
    allowed_media_types: Tuple[str, ...] = ("application/pdf", "application/x-pdf")
    min_extracted_chars: int = 50
    min_pages: int = 1
    max_pages: int = 12
    max_chunks: int = 2000
    min_chunk_count: int = 1
    chunk_size: int = 500
    chunk_overlap: int = 200

    @classmethod
    def from_settings(cls, settings) -> "ValidationLimits":
        """Build limits from application settings."""
        return cls(
            max_file_bytes=settings.max_file_size_mb * 1024 * 1024,
            min_extracted_chars=settings.min_extracted_chars,
            min_pages=settings.min_pages,
            max_pages=settings.max_pages,
            max_chunks=settings.max_chunks,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )


@dataclass
class ValidatedDocument:
    """Result of a successful validation."""

    text: str
    page_count: int
    estimated_chunks: int
    buffer: bytes = field(repr=False)


class DocumentValidator:
    """Base class for document validators."""

    @classmethod
    def validate_file_size(cls, file_size_bytes: int, max_bytes: int) -> None:
        """Validate file size."""
        if file_size_bytes > max_bytes:
            file_size_mb = file_size_bytes / (1024 * 1024)
            max_size_mb = max_bytes / (1024 * 1024)
            raise FileSizeExceededError(
                f"File size ({file_size_mb:.2f} MB) exceeds maximum allowed size ({max_size_mb:g} MB)."
            )


class PDFValidator(DocumentValidator):
    """Validator for PDF uploads."""

    @classmethod
    def validate_media_type(cls, content_type: Optional[str], limits: ValidationLimits) -> None:
        """Reject anything not declared as a PDF."""
        media_type = (content_type or "").split(";", 1)[0].strip().lower()
        if media_type not in limits.allowed_media_types:
            raise InvalidMediaTypeError("Only PDF files are allowed")

    @classmethod
    def validate_header(cls, buffer: bytes) -> None:
        """Check the PDF magic signature."""
        if not buffer[: len(PDF_MAGIC)].startswith(PDF_MAGIC):
            raise InvalidHeaderError("Invalid PDF file")

    @classmethod
    def validate_content(cls, text: str, page_count: int, limits: ValidationLimits) -> int:
        """
        Validate page count, extractable text and the estimated chunk count.

        Args:
            text: Extracted, stripped document text
            page_count: Number of pages reported by the parser
            limits: Validation limits

        Returns:
            Estimated number of chunks

        Raises:
            TooFewPagesError: If the PDF has fewer pages than allowed
            PageLimitExceededError: If the PDF exceeds the page limit
            DocumentEmptyError: If too little text could be extracted
            ChunkLimitExceededError: If the document would create too many chunks
        """
        if page_count < limits.min_pages:
            raise TooFewPagesError(f"PDF must have at least {limits.min_pages} page(s)")

        if page_count > limits.max_pages:
            raise PageLimitExceededError(f"PDF exceeds {limits.max_pages} page limit")

        if not text or len(text) < limits.min_extracted_chars:
            raise DocumentEmptyError(
                "PDF does not contain extractable text (image-only PDFs not supported)"
            )

        estimated_chunks = estimate_chunk_count(len(text), limits)
        if estimated_chunks > limits.max_chunks:
            raise ChunkLimitExceededError(
                f"Document would create ~{estimated_chunks} chunks (limit {limits.max_chunks})"
            )
        return estimated_chunks


def estimate_chunk_count(text_length: int, limits: ValidationLimits) -> int:
    """Estimate chunks from the effective stride (chunk size minus overlap)."""
    stride = max(1, limits.chunk_size - limits.chunk_overlap)
    return max(limits.min_chunk_count, math.ceil(text_length / stride))


def validate_document(
    buffer: Optional[bytes],
    content_type: Optional[str],
    declared_size: Optional[int] = None,
    limits: Optional[ValidationLimits] = None,
) -> ValidatedDocument:
    """
    Validate an uploaded PDF and extract its text.

    Checks run cheapest first; the size check happens before any parsing.

    Args:
        buffer: Raw uploaded bytes (None when no file was sent)
        content_type: Declared media type
        declared_size: Declared size in bytes, if the client sent one
        limits: Validation limits (defaults when omitted)

    Returns:
        ValidatedDocument with text, page count, chunk estimate and raw buffer
    """
    limits = limits or ValidationLimits()

    if buffer is None:
        raise NoFileError("No file uploaded")

    PDFValidator.validate_media_type(content_type, limits)
    PDFValidator.validate_file_size(max(declared_size or 0, len(buffer)), limits.max_file_bytes)
    PDFValidator.validate_header(buffer)

    try:
        text, page_count = extract_text_from_pdf(buffer)
    except Exception as e:
        logger.warning(f"PDF parsing failed: {str(e)}")
        raise PDFParseError("Unable to parse PDF (corrupted or unsupported)") from e

    text = text.strip()
    estimated_chunks = PDFValidator.validate_content(text, page_count, limits)

    logger.info(
        f"PDF validated: {page_count} pages, {len(text):,} characters, ~{estimated_chunks} chunks",
        extra={"total_pages": page_count, "chunk_count": estimated_chunks},
    )

    return ValidatedDocument(
        text=text,
        page_count=page_count,
        estimated_chunks=estimated_chunks,
        buffer=buffer,
    )
