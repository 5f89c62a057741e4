"""Adaptive two-tier retrieval over the chunk store."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional

from pdfqa.exceptions import (
    UpstreamError,
    VectorSearchError,
    VectorSearchTimeoutError,
)
from pdfqa.models.document import RetrievedChunk
from pdfqa.services.embedding_service import EmbeddingClient
from pdfqa.services.vector_store import VectorStore, decode_match_rows
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import RETRIEVAL_TIER, TOP_SIMILARITY
from pdfqa.utils.timeouts import race_with_timeout
from pdfqa.utils.tracer import annotate_retrieval, get_tracer

TIER_STRICT = "strict"
TIER_MERGED = "merged"
TIER_STRICT_AFTER_FALLBACK_ERROR = "strict_fallback_failed"

REASON_NO_CHUNKS = "no_chunks_found"
REASON_LOW_SIMILARITY = "low_similarity"


@dataclass(frozen=True)
class RetrievalConfig:
    """Similarity thresholds, result counts and time budgets."""

    min_similarity: float = 0.35
    match_threshold: float = 0.25
    match_count: int = 8
    fallback_threshold: float = 0.10
    fallback_count: int = 20
    match_count_final: int = 12
    rpc_timeout_ms: float = 5000
    rpc_fallback_timeout_ms: float = 7000


def top_similarity(chunks: List[RetrievedChunk]) -> float:
    """Highest similarity in a chunk set, 0 when empty."""
    return max((chunk.similarity for chunk in chunks), default=0.0)


def merge_chunks(*tiers: List[RetrievedChunk], limit: int) -> List[RetrievedChunk]:
    """
    Merge result tiers by chunk id, keeping the higher similarity.

    The merged set is stable-sorted by similarity descending and capped.
    """
    merged = {}
    for chunks in tiers:
        for chunk in chunks:
            existing = merged.get(chunk.id)
            if existing is None or chunk.similarity > existing.similarity:
                merged[chunk.id] = chunk
    ordered = sorted(merged.values(), key=lambda c: c.similarity, reverse=True)
    return ordered[:limit]


@dataclass
class RetrievalOutcome:
    """Chunks found for one question plus the acceptance decision."""

    chunks: List[RetrievedChunk]
    tier: str
    min_similarity: float
    top_similarity: float = field(init=False)

    def __post_init__(self):
        self.top_similarity = top_similarity(self.chunks)

    @property
    def is_sufficient(self) -> bool:
        """True when the best chunk clears the acceptance threshold."""
        return bool(self.chunks) and self.top_similarity >= self.min_similarity

    @property
    def insufficiency_reason(self) -> Optional[str]:
        if not self.chunks:
            return REASON_NO_CHUNKS
        if self.top_similarity < self.min_similarity:
            return REASON_LOW_SIMILARITY
        return None


class RetrievalService:
    """Embeds a question and queries the store with strict and fallback tiers."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        config: Optional[RetrievalConfig] = None,
    ):
        """
        Initialize retrieval service.

        Args:
            embedding_client: Client used for the query embedding
            vector_store: Chunk store exposing ``match_chunks``
            config: Thresholds and budgets (defaults when omitted)
        """
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.config = config or RetrievalConfig()
        self.tracer = get_tracer(__name__)

    async def _match(
        self,
        query_embedding: List[float],
        session_id: str,
        threshold: float,
        count: int,
        timeout_ms: float,
        label: str,
    ) -> List[RetrievedChunk]:
        try:
            rows = await race_with_timeout(
                self.vector_store.match_chunks(
                    query_embedding=query_embedding,
                    session_id=session_id,
                    match_threshold=threshold,
                    match_count=count,
                ),
                timeout_ms,
                VectorSearchTimeoutError,
                message=f"Vector search ({label}) timeout",
            )
        except UpstreamError:
            raise
        except Exception as e:
            raise VectorSearchError(f"Vector search ({label}) failed: {str(e)}") from e
        return decode_match_rows(rows)

    async def retrieve(
        self,
        question: str,
        session_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        request_id: Optional[str] = None,
    ) -> RetrievalOutcome:
        """
        Retrieve the chunks most relevant to a question.

        1. Embed the question (timeout-guarded).
        2. Strict query; return immediately if its top similarity is accepted.
        3. Otherwise a looser fallback query with a longer budget.
        4. A failed fallback degrades to the strict results.
        5. Otherwise merge both tiers, sort by similarity and cap.

        Args:
            question: Sanitized user question
            session_id: Document/session scope
            cancel_event: Optional abort signal for the query embedding
            request_id: Correlation id for logs

        Returns:
            RetrievalOutcome with chunks, tier and the acceptance decision

        Raises:
            EmbeddingError, EmbeddingTimeoutError, EmbeddingCancelledError:
                If the query cannot be embedded
            VectorSearchError, VectorSearchTimeoutError: If the strict query fails
        """
        cfg = self.config
        start_time = time.time()
        log_extra = {"request_id": request_id, "session_id": session_id}

        with self.tracer.start_as_current_span("retrieval.retrieve") as span:
            query_embedding = await self.embedding_client.embed_query(
                question, cancel_event=cancel_event
            )

            strict = await self._match(
                query_embedding, session_id, cfg.match_threshold, cfg.match_count,
                cfg.rpc_timeout_ms, TIER_STRICT,
            )
            strict_top = top_similarity(strict)

            if strict_top >= cfg.min_similarity:
                outcome = RetrievalOutcome(strict, TIER_STRICT, cfg.min_similarity)
            else:
                try:
                    fallback = await self._match(
                        query_embedding, session_id, cfg.fallback_threshold, cfg.fallback_count,
                        cfg.rpc_fallback_timeout_ms, "fallback",
                    )
                except UpstreamError as e:
                    logger.warning(
                        f"Fallback vector search failed, using strict results: {str(e)}",
                        extra=log_extra,
                    )
                    outcome = RetrievalOutcome(
                        strict, TIER_STRICT_AFTER_FALLBACK_ERROR, cfg.min_similarity
                    )
                else:
                    merged = merge_chunks(strict, fallback, limit=cfg.match_count_final)
                    outcome = RetrievalOutcome(merged, TIER_MERGED, cfg.min_similarity)

            annotate_retrieval(span, outcome.tier, len(outcome.chunks), outcome.top_similarity)

        RETRIEVAL_TIER.labels(tier=outcome.tier).inc()
        TOP_SIMILARITY.observe(outcome.top_similarity)
        logger.info(
            f"RAG stats: {len(outcome.chunks)} chunks, top similarity {outcome.top_similarity:.3f} "
            f"({outcome.tier})",
            extra={
                **log_extra,
                "chunk_count": len(outcome.chunks),
                "top_similarity": outcome.top_similarity,
                "tier": outcome.tier,
                "elapsed_ms": (time.time() - start_time) * 1000,
            },
        )
        return outcome
