"""Tests for two-tier retrieval."""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import FakeEmbeddingBackend, retrieved
from pdfqa.exceptions import (
    EmbeddingTimeoutError,
    MalformedResponseError,
    VectorSearchError,
    VectorSearchTimeoutError,
)
from pdfqa.services.embedding_service import EmbeddingClient
from pdfqa.services.retrieval_service import (
    REASON_LOW_SIMILARITY,
    REASON_NO_CHUNKS,
    TIER_MERGED,
    TIER_STRICT,
    TIER_STRICT_AFTER_FALLBACK_ERROR,
    RetrievalConfig,
    RetrievalOutcome,
    RetrievalService,
    merge_chunks,
)


def row(chunk_id, similarity, page=1):
    return {"id": chunk_id, "content": f"content {chunk_id}", "page_number": page, "similarity": similarity}


def make_service(strict_rows, fallback_rows=None, fallback_error=None, config=None):
    """Service whose store answers the strict and fallback queries in turn."""
    config = config or RetrievalConfig()
    store = Mock()

    async def match_chunks(query_embedding, session_id, match_threshold, match_count):
        if match_threshold == config.match_threshold:
            return strict_rows
        if fallback_error is not None:
            raise fallback_error
        return fallback_rows or []

    store.match_chunks = AsyncMock(side_effect=match_chunks)
    service = RetrievalService(EmbeddingClient(FakeEmbeddingBackend()), store, config)
    return service, store


class TestMergeChunks:
    """Tests for merge_chunks."""

    def test_dedup_keeps_higher_similarity(self):
        merged = merge_chunks(
            [retrieved("a", 0.30), retrieved("b", 0.28)],
            [retrieved("a", 0.32), retrieved("c", 0.15)],
            limit=10,
        )
        assert [(c.id, c.similarity) for c in merged] == [("a", 0.32), ("b", 0.28), ("c", 0.15)]

    def test_limit(self):
        merged = merge_chunks([retrieved(str(i), i / 100) for i in range(30)], limit=12)
        assert len(merged) == 12
        assert merged[0].similarity == 0.29


class TestRetrievalOutcome:
    """Tests for the acceptance decision."""

    def test_sufficient(self):
        outcome = RetrievalOutcome([retrieved("a", 0.5)], TIER_STRICT, 0.35)
        assert outcome.is_sufficient
        assert outcome.insufficiency_reason is None

    def test_no_chunks(self):
        outcome = RetrievalOutcome([], TIER_MERGED, 0.35)
        assert not outcome.is_sufficient
        assert outcome.top_similarity == 0.0
        assert outcome.insufficiency_reason == REASON_NO_CHUNKS

    def test_low_similarity(self):
        outcome = RetrievalOutcome([retrieved("a", 0.2)], TIER_MERGED, 0.35)
        assert outcome.insufficiency_reason == REASON_LOW_SIMILARITY


class TestRetrievalService:
    """Tests for RetrievalService.retrieve."""

    @pytest.mark.asyncio
    async def test_strict_tier_accepted(self):
        service, store = make_service([row("a", 0.62), row("b", 0.41)])
        outcome = await service.retrieve("What was revenue?", "s1")

        assert outcome.tier == TIER_STRICT
        assert [c.id for c in outcome.chunks] == ["a", "b"]
        assert outcome.is_sufficient
        assert store.match_chunks.await_count == 1
        kwargs = store.match_chunks.await_args.kwargs
        assert kwargs["session_id"] == "s1"
        assert kwargs["match_count"] == 8

    @pytest.mark.asyncio
    async def test_fallback_merge_is_monotonic(self):
        strict = [row("a", 0.30), row("b", 0.28)]
        fallback = [row("a", 0.30), row("c", 0.22), row("d", 0.12)]
        service, store = make_service(strict, fallback)

        outcome = await service.retrieve("question", "s1")

        assert outcome.tier == TIER_MERGED
        assert store.match_chunks.await_count == 2
        assert {"a", "b"} <= {c.id for c in outcome.chunks}
        assert outcome.top_similarity >= 0.30
        similarities = [c.similarity for c in outcome.chunks]
        assert similarities == sorted(similarities, reverse=True)
        assert len({c.id for c in outcome.chunks}) == len(outcome.chunks)

    @pytest.mark.asyncio
    async def test_fallback_capped(self):
        fallback = [row(f"f{i}", 0.2 - i / 1000) for i in range(20)]
        service, _ = make_service([row("a", 0.3)], fallback)
        outcome = await service.retrieve("question", "s1")
        assert len(outcome.chunks) == 12

    @pytest.mark.asyncio
    async def test_fallback_error_degrades_to_strict(self):
        service, _ = make_service([row("a", 0.30)], fallback_error=RuntimeError("rpc down"))
        outcome = await service.retrieve("question", "s1")

        assert outcome.tier == TIER_STRICT_AFTER_FALLBACK_ERROR
        assert [c.id for c in outcome.chunks] == ["a"]
        assert outcome.insufficiency_reason == REASON_LOW_SIMILARITY

    @pytest.mark.asyncio
    async def test_no_chunks_found(self):
        service, _ = make_service([], [])
        outcome = await service.retrieve("unrelated question", "s1")

        assert outcome.chunks == []
        assert outcome.top_similarity == 0.0
        assert outcome.insufficiency_reason == REASON_NO_CHUNKS

    @pytest.mark.asyncio
    async def test_strict_failure_is_fatal(self):
        service, store = make_service([])
        store.match_chunks = AsyncMock(side_effect=RuntimeError("connection refused"))
        with pytest.raises(VectorSearchError):
            await service.retrieve("question", "s1")

    @pytest.mark.asyncio
    async def test_strict_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(10)

        service, store = make_service([], config=RetrievalConfig(rpc_timeout_ms=20))
        store.match_chunks = AsyncMock(side_effect=slow)
        with pytest.raises(VectorSearchTimeoutError):
            await service.retrieve("question", "s1")

    @pytest.mark.asyncio
    async def test_malformed_similarity_rejected(self):
        service, _ = make_service([row("a", None)])
        with pytest.raises(MalformedResponseError):
            await service.retrieve("question", "s1")

    @pytest.mark.asyncio
    async def test_embedding_timeout_propagates(self):
        class Slow:
            async def feature_extraction(self, inputs):
                await asyncio.sleep(10)

        store = Mock()
        store.match_chunks = AsyncMock(return_value=[])
        service = RetrievalService(EmbeddingClient(Slow(), query_timeout_ms=20), store)

        with pytest.raises(EmbeddingTimeoutError):
            await service.retrieve("question", "s1")
        store.match_chunks.assert_not_awaited()
