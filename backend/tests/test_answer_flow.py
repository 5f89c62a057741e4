"""End-to-end flow from an uploaded PDF to a streamed answer citing its pages."""
import json
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import FakeCompletionStream, make_pdf
from pdfqa.models.document import Role
from pdfqa.services.document_processor import DocumentProcessor
from pdfqa.services.document_upload_service import DocumentUploadService
from pdfqa.services.embedding_service import EmbeddingClient
from pdfqa.services.llm_service import LLMService
from pdfqa.services.response_streamer import STREAM_DELIMITER, STREAM_ERROR_MARKER, ResponseStreamer
from pdfqa.services.retrieval_service import TIER_STRICT, RetrievalService

PAGES = [
    "Revenue from the northern stores reached four million dollars in spring. "
    "Analysts expect that figure to keep lifting total company revenue.",
    "Autumn revenue slipped slightly after the warehouse fire.",
    "Staff training sessions resumed across all branch offices.",
]


class KeywordEmbeddingBackend:
    """Places texts mentioning the keyword on one axis and everything else on the other."""

    def __init__(self, keyword: str):
        self.keyword = keyword

    def vector_for(self, text: str):
        return [1.0, 0.0] if self.keyword in text.lower() else [0.0, 1.0]

    async def feature_extraction(self, inputs):
        if isinstance(inputs, str):
            return self.vector_for(inputs)
        return [self.vector_for(text) for text in inputs]


async def collect(answer) -> str:
    parts = []
    async for piece in answer:
        parts.append(piece)
    return b"".join(parts).decode("utf-8")


class TestAnswerFlow:
    """Upload, retrieve and stream against an in-memory Qdrant store."""

    @pytest.mark.asyncio
    async def test_sources_cite_pages_before_answer(self, memory_store):
        embedding_client = EmbeddingClient(
            KeywordEmbeddingBackend("revenue"), expected_dimension=2, retry_delay_ms=0
        )
        upload_service = DocumentUploadService(
            document_processor=DocumentProcessor(chunk_size=80, chunk_overlap=0),
            embedding_client=embedding_client,
            vector_store=memory_store,
        )

        document = await upload_service.upload_and_process_document(
            make_pdf(PAGES), "results.pdf", "application/pdf"
        )
        assert document.total_pages == 3
        assert document.total_chunks == 4

        question = "How did revenue develop this year?"
        outcome = await RetrievalService(embedding_client, memory_store).retrieve(
            question, document.session_id
        )
        assert outcome.tier == TIER_STRICT
        assert outcome.is_sufficient

        llm_client = Mock()
        llm_client.chat.completions.create = AsyncMock(
            return_value=FakeCompletionStream(["Revenue rose in spring [Page 1] ", "and slipped in autumn [Page 2]."])
        )
        answer = ResponseStreamer(LLMService(client=llm_client)).respond(outcome, question, Role.STRICT_QA)
        body = await collect(answer)

        metadata, text = body.split(STREAM_DELIMITER, 1)
        sources = json.loads(metadata)["sources"]
        assert sorted(source["page"] for source in sources) == [1, 1, 2]
        assert all("revenue" in source["excerpt"].lower() for source in sources)
        assert text == "Revenue rose in spring [Page 1] and slipped in autumn [Page 2]."
        assert STREAM_ERROR_MARKER not in body

    @pytest.mark.asyncio
    async def test_other_sessions_not_cited(self, memory_store):
        embedding_client = EmbeddingClient(
            KeywordEmbeddingBackend("revenue"), expected_dimension=2, retry_delay_ms=0
        )
        upload_service = DocumentUploadService(
            document_processor=DocumentProcessor(chunk_size=80, chunk_overlap=0),
            embedding_client=embedding_client,
            vector_store=memory_store,
        )
        await upload_service.upload_and_process_document(make_pdf(PAGES), "a.pdf", "application/pdf")
        other = await upload_service.upload_and_process_document(
            make_pdf([PAGES[2], PAGES[2]]), "b.pdf", "application/pdf"
        )

        outcome = await RetrievalService(embedding_client, memory_store).retrieve(
            "What happened to revenue?", other.session_id
        )

        assert outcome.chunks == []
        assert outcome.insufficiency_reason == "no_chunks_found"
