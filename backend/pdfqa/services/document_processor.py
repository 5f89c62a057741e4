"""PDF text extraction, chunking and page attribution."""
import io
import uuid
from typing import Iterator, List, Tuple

import pdfplumber
from langchain_text_splitters import RecursiveCharacterTextSplitter

from pdfqa.models.document import Chunk, ChunkSpan
from pdfqa.utils.logger import logger

PAGE_SEPARATOR = "\n\n"


def extract_text_from_pdf(buffer: bytes) -> Tuple[str, int]:
    """
    Extract plain text and page count from PDF bytes using pdfplumber.

    Pages are joined with a blank line. Pages that fail extraction contribute
    empty text but still count towards the page total.

    Args:
        buffer: Raw PDF bytes

    Returns:
        Tuple of (text, page_count)
    """
    page_texts = []
    with pdfplumber.open(io.BytesIO(buffer)) as pdf:
        for page_num, page in enumerate(pdf.pages, 1):
            try:
                page_texts.append(page.extract_text() or "")
            except Exception as e:
                logger.warning(f"Error extracting text from PDF page {page_num}: {str(e)}")
                page_texts.append("")
        page_count = len(pdf.pages)

    return PAGE_SEPARATOR.join(page_texts).strip(), page_count


def approximate_page(char_start: int, total_chars: int, num_pages: int) -> int:
    """
    Estimate the 1-based page of a character offset by its position in the text.

    This is a proportional estimate, not a layout reconstruction: a chunk is
    attributed to ``floor(char_start / total_chars * num_pages) + 1`` clamped
    to ``[1, num_pages]``.
    """
    total_chars = max(total_chars, 1)
    num_pages = max(num_pages, 1)
    page = int(char_start / total_chars * num_pages) + 1
    return min(max(1, page), num_pages)


class DocumentProcessor:
    """Splits extracted text into overlapping chunks with offsets and pages."""

    def __init__(self, chunk_size: int = 500, chunk_overlap: int = 200):
        """
        Initialize document processor.

        Args:
            chunk_size: Target chunk size in characters
            chunk_overlap: Overlap between consecutive chunks in characters
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.text_splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )

    def iter_chunk_spans(self, text: str) -> Iterator[ChunkSpan]:
        """
        Yield chunks in order with their offsets in ``text``.

        Chunks come out of the splitter in document order and may overlap,
        so each one is the first occurrence after the previous chunk's start.
        The search from the end of the previous chunk is only a fallback, and
        when neither finds the piece the cursor itself is used as the start.
        """
        cursor = 0
        previous_start = -1
        for chunk_index, piece in enumerate(self.text_splitter.split_text(text)):
            found_at = text.find(piece, previous_start + 1)
            if found_at < 0:
                found_at = text.find(piece, cursor)
            start = found_at if found_at >= 0 else cursor
            end = start + len(piece)
            yield ChunkSpan(chunk_index=chunk_index, text=piece, char_start=start, char_end=end)
            previous_start = start
            cursor = end

    def chunk_text(self, text: str, document_id: str, num_pages: int) -> List[Chunk]:
        """
        Chunk text and attribute an approximate page to every chunk.

        Args:
            text: Full extracted document text
            document_id: Owning document (session) id
            num_pages: Total pages in the document

        Returns:
            Chunks ordered by chunk index
        """
        total_chars = len(text)
        chunks = [
            Chunk(
                id=str(uuid.uuid4()),
                document_id=document_id,
                chunk_index=span.chunk_index,
                char_start=span.char_start,
                char_end=span.char_end,
                page_number=approximate_page(span.char_start, total_chars, num_pages),
                text=span.text,
            )
            for span in self.iter_chunk_spans(text)
        ]

        logger.info(
            f"Created {len(chunks)} chunks from {total_chars:,} characters",
            extra={"document_id": document_id, "chunk_count": len(chunks)},
        )
        return chunks
