"""Document ingestion: validate, chunk, embed and store an uploaded PDF."""
import asyncio
import time
import uuid
from typing import Optional

from pdfqa.exceptions import BatchSizeMismatchError
from pdfqa.models.document import Document
from pdfqa.services.document_processor import DocumentProcessor
from pdfqa.services.embedding_service import EmbeddingClient
from pdfqa.services.vector_store import VectorStore
from pdfqa.validators import ValidationLimits, validate_document
from pdfqa.utils.logger import logger


class DocumentUploadService:
    """Runs the ingestion pipeline synchronously within one request."""

    def __init__(
        self,
        document_processor: DocumentProcessor,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        limits: Optional[ValidationLimits] = None,
    ):
        """
        Initialize upload service.

        Args:
            document_processor: Chunker and page mapper
            embedding_client: Batch embedding client
            vector_store: Chunk store
            limits: Validation limits
        """
        self.document_processor = document_processor
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.limits = limits or ValidationLimits(
            chunk_size=document_processor.chunk_size,
            chunk_overlap=document_processor.chunk_overlap,
        )

    async def upload_and_process_document(
        self,
        file_content: Optional[bytes],
        filename: Optional[str],
        content_type: Optional[str],
        declared_size: Optional[int] = None,
    ) -> Document:
        """
        Ingest an uploaded PDF.

        Args:
            file_content: Raw file bytes (None when no file was sent)
            filename: Original file name
            content_type: Declared media type
            declared_size: Declared size in bytes

        Returns:
            The created Document; its session_id scopes later questions

        Raises:
            ValidationError: For user-correctable upload problems
            EmbeddingError, DataIntegrityError, StorageError: For pipeline failures
        """
        start_time = time.time()

        # Step 1: Validate and extract text (pdfplumber is blocking)
        validated = await asyncio.to_thread(
            validate_document, file_content, content_type, declared_size, self.limits
        )

        session_id = str(uuid.uuid4())

        # Step 2: Chunk and attribute pages
        chunks = self.document_processor.chunk_text(
            validated.text, session_id, validated.page_count
        )

        # Step 3: Embed in order
        embeddings = await self.embedding_client.embed_batch([chunk.text for chunk in chunks])
        if len(embeddings) != len(chunks):
            raise BatchSizeMismatchError(
                f"Embedding generation failed: {len(embeddings)} vectors for {len(chunks)} chunks"
            )

        # Step 4: Persist
        document = Document(
            session_id=session_id,
            filename=filename or "document.pdf",
            total_pages=validated.page_count,
            total_chunks=len(chunks),
        )
        await self.vector_store.save_chunks(document, chunks, embeddings)

        logger.info(
            f"Document uploaded successfully: {session_id}",
            extra={
                "session_id": session_id,
                "document_filename": document.filename,
                "total_pages": document.total_pages,
                "chunk_count": len(chunks),
                "elapsed_ms": (time.time() - start_time) * 1000,
            },
        )
        return document
