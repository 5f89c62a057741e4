"""Grounding gate and streamed answer protocol.

A streamed answer is plain text: a JSON object with the sources, the
delimiter ``\\n---\\n``, then the generated text as it arrives. If generation
fails midway, the in-band marker ``\\n\\n[STREAM_ERROR]\\n`` is written and the
stream ends normally.
"""
import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pdfqa.models.document import RetrievedChunk, Role
from pdfqa.prompts import temperature_for
from pdfqa.services.context_builder import ContextBudget, TokenCounter, build_system_prompt
from pdfqa.services.llm_service import LLMService, ProviderReader, StreamFailure, TextDelta
from pdfqa.services.retrieval_service import RetrievalOutcome
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import STREAM_ERRORS
from pdfqa.utils.tracer import get_tracer, mark_failed

STREAM_DELIMITER = "\n---\n"
STREAM_ERROR_MARKER = "\n\n[STREAM_ERROR]\n"
INSUFFICIENT_CONTEXT = "INSUFFICIENT_CONTEXT"
EXCERPT_CHARS = 200


class StreamState(str, Enum):
    """States of one answer stream."""

    GATED = "gated"
    EMITTING_METADATA = "emitting_metadata"
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


def build_sources(chunks: List[RetrievedChunk]) -> List[Dict[str, Any]]:
    """Source entries shown to the client: page, rounded similarity and a short excerpt."""
    return [
        {
            "page": chunk.page_number,
            "similarity": round(chunk.similarity, 4),
            "excerpt": (
                f"{chunk.content[:EXCERPT_CHARS]}..."
                if len(chunk.content) > EXCERPT_CHARS
                else chunk.content
            ),
        }
        for chunk in chunks
    ]


@dataclass
class InsufficientContext:
    """Non-streamed answer returned when the grounding gate is not met."""

    reason: str
    top_similarity: float
    sources: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": INSUFFICIENT_CONTEXT,
            "reason": self.reason,
            "topSimilarity": self.top_similarity,
            "sources": self.sources,
        }


class AnswerStream:
    """One streamed answer; iterate it to get the response body bytes."""

    def __init__(
        self,
        llm_service: LLMService,
        system_prompt: str,
        question: str,
        temperature: float,
        sources: List[Dict[str, Any]],
        request_id: Optional[str] = None,
    ):
        self.llm_service = llm_service
        self.system_prompt = system_prompt
        self.question = question
        self.temperature = temperature
        self.sources = sources
        self.request_id = request_id
        self.state = StreamState.GATED
        self.reader: Optional[ProviderReader] = None
        self._generator = self._run()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._generator

    async def aclose(self) -> None:
        """Stop the stream and release the upstream reader if still open."""
        await self._generator.aclose()

    def _transition(self, state: StreamState) -> None:
        logger.debug(
            f"Stream state {self.state.value} -> {state.value}",
            extra={"request_id": self.request_id, "stream_state": state.value},
        )
        self.state = state

    async def _run(self) -> AsyncIterator[bytes]:
        self._transition(StreamState.EMITTING_METADATA)
        yield (json.dumps({"sources": self.sources}) + STREAM_DELIMITER).encode("utf-8")

        self._transition(StreamState.GENERATING)
        span = get_tracer(__name__).start_span("llm.stream")
        try:
            self.reader = await self.llm_service.open_stream(
                self.system_prompt, self.question, self.temperature
            )
            outcome = await self.reader.read()
            while isinstance(outcome, TextDelta):
                if outcome.text:
                    yield outcome.text.encode("utf-8")
                outcome = await self.reader.read()
            if isinstance(outcome, StreamFailure):
                raise outcome.error
            self._transition(StreamState.DONE)
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Stream cancelled by client", extra={"request_id": self.request_id})
            raise
        except Exception as e:
            self._transition(StreamState.FAILED)
            STREAM_ERRORS.inc()
            mark_failed(span, e)
            logger.error(
                f"Streaming error: {str(e)}",
                exc_info=True,
                extra={"request_id": self.request_id},
            )
            yield STREAM_ERROR_MARKER.encode("utf-8")
        finally:
            if self.reader is not None:
                await self.reader.release()
            span.end()


class ResponseStreamer:
    """Applies the grounding gate and builds the streamed answer."""

    def __init__(
        self,
        llm_service: LLMService,
        budget: Optional[ContextBudget] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        """
        Initialize the streamer.

        Args:
            llm_service: Streaming LLM provider client
            budget: Context size limits
            token_counter: Optional token counter for token budgets
        """
        self.llm_service = llm_service
        self.budget = budget or ContextBudget()
        self.token_counter = token_counter

    def respond(
        self,
        outcome: RetrievalOutcome,
        question: str,
        role: Role,
        allow_ungrounded: bool = False,
        request_id: Optional[str] = None,
    ) -> Union[InsufficientContext, AnswerStream]:
        """
        Gate on evidence, then prepare the streamed answer.

        Args:
            outcome: Retrieval outcome for the question
            question: Sanitized user question
            role: Answering persona
            allow_ungrounded: Answer even when the gate is not met
            request_id: Correlation id for logs

        Returns:
            InsufficientContext when gated, otherwise an AnswerStream
        """
        sources = build_sources(outcome.chunks)

        if not outcome.is_sufficient and not allow_ungrounded:
            logger.info(
                f"Insufficient context: {outcome.insufficiency_reason}",
                extra={"request_id": request_id, "top_similarity": outcome.top_similarity},
            )
            return InsufficientContext(
                reason=outcome.insufficiency_reason,
                top_similarity=outcome.top_similarity,
                sources=sources,
            )

        system_prompt = build_system_prompt(
            outcome.chunks,
            role,
            budget=self.budget,
            token_counter=self.token_counter,
            assume_sorted=False,
        )
        return AnswerStream(
            llm_service=self.llm_service,
            system_prompt=system_prompt,
            question=question,
            temperature=temperature_for(role),
            sources=sources,
            request_id=request_id,
        )
