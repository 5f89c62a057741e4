"""Tests for the ingestion pipeline and the local embedding backend."""
from unittest.mock import AsyncMock, Mock, patch

import pytest

from conftest import FakeEmbeddingBackend
from pdfqa.exceptions import BatchSizeMismatchError, EmbeddingError, InvalidHeaderError
from pdfqa.services.document_processor import DocumentProcessor
from pdfqa.services.document_upload_service import DocumentUploadService
from pdfqa.services.embedding_service import EmbeddingClient


def make_service(backend=None):
    store = Mock()
    store.save_chunks = AsyncMock(return_value=0)
    return DocumentUploadService(
        document_processor=DocumentProcessor(chunk_size=60, chunk_overlap=10),
        embedding_client=EmbeddingClient(backend or FakeEmbeddingBackend(), retry_delay_ms=0),
        vector_store=store,
    ), store


class TestDocumentUploadService:
    """Tests for DocumentUploadService."""

    @pytest.mark.asyncio
    async def test_ingests_pdf(self, sample_pdf_content):
        service, store = make_service()
        document = await service.upload_and_process_document(
            sample_pdf_content, "report.pdf", "application/pdf"
        )

        assert document.total_pages == 2
        assert document.total_chunks > 1
        saved_document, chunks, embeddings = store.save_chunks.await_args.args
        assert saved_document is document
        assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
        assert all(chunk.document_id == document.session_id for chunk in chunks)
        assert len(embeddings) == len(chunks)

    @pytest.mark.asyncio
    async def test_limits_follow_processor(self):
        service, _ = make_service()
        assert service.limits.chunk_size == 60
        assert service.limits.chunk_overlap == 10

    @pytest.mark.asyncio
    async def test_validation_error_stores_nothing(self):
        service, store = make_service()
        with pytest.raises(InvalidHeaderError):
            await service.upload_and_process_document(b"hello", "doc.pdf", "application/pdf")
        store.save_chunks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_embedding_failure_stores_nothing(self, sample_pdf_content):
        service, store = make_service(backend=FakeEmbeddingBackend(fail_times=100))
        with pytest.raises(EmbeddingError):
            await service.upload_and_process_document(sample_pdf_content, "r.pdf", "application/pdf")
        store.save_chunks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_embedding_count_mismatch(self, sample_pdf_content):
        service, store = make_service()
        service.embedding_client.embed_batch = AsyncMock(return_value=[[0.1, 0.2]])
        with pytest.raises(BatchSizeMismatchError):
            await service.upload_and_process_document(sample_pdf_content, "r.pdf", "application/pdf")
        store.save_chunks.assert_not_awaited()


class TestSentenceTransformerBackend:
    """Tests for the optional in-process backend."""

    @pytest.mark.asyncio
    async def test_model_loaded_once(self):
        pytest.importorskip("sentence_transformers")
        from pdfqa.services.local_embedding import SentenceTransformerBackend
        import numpy as np

        model = Mock()
        model.encode = Mock(side_effect=lambda inputs, **kwargs: (
            np.ones(3) if isinstance(inputs, str) else np.ones((len(inputs), 3))
        ))
        with patch("pdfqa.services.local_embedding.SentenceTransformer", return_value=model) as loader:
            backend = SentenceTransformerBackend("test-model")
            flat = await backend.feature_extraction("one")
            nested = await backend.feature_extraction(["a", "b"])

        loader.assert_called_once_with("test-model", device="cpu")
        assert flat == [1.0, 1.0, 1.0]
        assert nested == [[1.0, 1.0, 1.0], [1.0, 1.0, 1.0]]
