"""Embedding client for the hosted feature-extraction service."""
import asyncio
import math
import numbers
import random
from typing import Any, List, Optional, Sequence, Union

import httpx

from pdfqa.exceptions import (
    BatchSizeMismatchError,
    EmbeddingCancelledError,
    EmbeddingError,
    EmbeddingTimeoutError,
    MalformedResponseError,
    UpstreamTimeoutError,
)
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import EMBEDDING_RETRIES
from pdfqa.utils.timeouts import race_with_timeout

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

Vector = List[float]


class HuggingFaceInferenceBackend:
    """Feature-extraction calls against the Hugging Face Inference API."""

    def __init__(
        self,
        api_token: str,
        model: str = DEFAULT_MODEL,
        base_url: str = "https://router.huggingface.co/hf-inference/models",
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the inference backend.

        Args:
            api_token: Hugging Face API token
            model: Model identifier
            base_url: Inference endpoint base URL
            timeout_seconds: Transport-level timeout for a single HTTP call
            http_client: Optional preconfigured client (tests pass a mock transport)
        """
        if not api_token and http_client is None:
            raise ValueError("HF_API_TOKEN is required for the hosted embedding backend")

        self.model = model
        self.url = f"{base_url.rstrip('/')}/{model}/pipeline/feature-extraction"
        self.client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {api_token}"},
        )

    async def feature_extraction(self, inputs: Union[str, List[str]]) -> Any:
        """Return the raw JSON payload for one text or a list of texts."""
        response = await self.client.post(self.url, json={"inputs": inputs})
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_vector(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0 and all(_is_number(v) for v in value)


def decode_embeddings(payload: Any, input_count: int) -> List[Vector]:
    """
    Decode a feature-extraction payload into one vector per input.

    Exactly two shapes are accepted: a list of vectors, or a single flat
    vector when exactly one input was sent. Anything else is rejected.

    Args:
        payload: Raw JSON payload
        input_count: Number of texts that were sent

    Returns:
        List of float vectors

    Raises:
        MalformedResponseError: If the payload shape is not recognized
        BatchSizeMismatchError: If the vector count differs from input_count
    """
    if not isinstance(payload, list) or not payload:
        raise MalformedResponseError("Empty or non-list response from embedding service")

    if _is_vector(payload):
        if input_count != 1:
            raise MalformedResponseError(
                f"Flat embedding returned for {input_count} inputs"
            )
        return [[float(v) for v in payload]]

    if all(isinstance(item, list) for item in payload):
        if len(payload) != input_count:
            raise BatchSizeMismatchError(
                f"Embeddings count ({len(payload)}) != inputs count ({input_count})"
            )
        vectors = []
        for index, item in enumerate(payload):
            if not _is_vector(item):
                raise MalformedResponseError(f"Invalid embedding vector at index {index}")
            vectors.append([float(v) for v in item])
        return vectors

    raise MalformedResponseError("Unexpected embedding shape from embedding service")


def l2_normalize(vector: Vector) -> Vector:
    """Scale a vector to unit length; zero or non-finite norms are left as-is."""
    norm = math.sqrt(sum(v * v for v in vector))
    if not math.isfinite(norm) or norm == 0:
        return vector
    return [v / norm for v in vector]


class EmbeddingClient:
    """Single (query) and batched (ingestion) embedding over an injected backend."""

    def __init__(
        self,
        backend,
        batch_size: int = 16,
        concurrency: int = 3,
        max_retries: int = 3,
        retry_delay_ms: float = 400,
        normalize: bool = True,
        query_timeout_ms: float = 5000,
        expected_dimension: Optional[int] = 384,
    ):
        """
        Initialize embedding client.

        Args:
            backend: Object exposing ``async feature_extraction(inputs)``
            batch_size: Texts per service call during ingestion
            concurrency: Maximum batch calls in flight
            max_retries: Retries per batch call after the first attempt
            retry_delay_ms: Base delay for exponential backoff
            normalize: L2-normalize returned vectors
            query_timeout_ms: Hard timeout for the single query embedding
            expected_dimension: Dimension used at ingestion; deviations are logged
        """
        if batch_size <= 0 or concurrency <= 0:
            raise ValueError("batch_size and concurrency must be positive")

        self.backend = backend
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.normalize = normalize
        self.query_timeout_ms = query_timeout_ms
        self.expected_dimension = expected_dimension

    async def embed_query(
        self, text: str, cancel_event: Optional[asyncio.Event] = None
    ) -> Vector:
        """
        Embed a live question under a hard timeout.

        Args:
            text: Question text
            cancel_event: Optional event the caller sets to abort the call

        Returns:
            Query vector

        Raises:
            EmbeddingTimeoutError: If the timeout fires first
            EmbeddingCancelledError: If the caller aborts first
            EmbeddingError: If the service fails or returns a bad payload
        """
        try:
            payload = await race_with_timeout(
                self.backend.feature_extraction(text),
                self.query_timeout_ms,
                EmbeddingTimeoutError,
                message="Embedding timeout",
                cancel_event=cancel_event,
                cancel_error=EmbeddingCancelledError,
            )
            vector = decode_embeddings(payload, 1)[0]
        except UpstreamTimeoutError:
            raise
        except Exception as e:
            logger.error(f"Query embedding failed: {str(e)}", exc_info=True)
            raise EmbeddingError(f"Failed to compute query embedding: {str(e)}") from e

        if self.expected_dimension and len(vector) != self.expected_dimension:
            logger.warning(
                f"Unexpected embedding dimension: {len(vector)} (expected {self.expected_dimension})"
            )

        return l2_normalize(vector) if self.normalize else vector

    async def embed_batch(self, texts: Sequence[str]) -> List[Vector]:
        """
        Embed many texts, preserving input order.

        Texts are grouped into ``batch_size`` calls with at most
        ``concurrency`` calls in flight. A call that exhausts its retries
        fails the whole operation and cancels the remaining calls.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, in input order
        """
        if not texts:
            return []

        outputs: List[Optional[Vector]] = [None] * len(texts)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_batch(start: int) -> None:
            inputs = list(texts[start:start + self.batch_size])
            async with semaphore:
                vectors = await self._embed_with_retries(inputs, start)
            for offset, vector in enumerate(vectors):
                outputs[start + offset] = l2_normalize(vector) if self.normalize else vector

        tasks = [
            asyncio.ensure_future(run_batch(start))
            for start in range(0, len(texts), self.batch_size)
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        missing = [index for index, vector in enumerate(outputs) if vector is None]
        if missing:
            raise EmbeddingError(f"Missing embedding for input index {missing[0]}")

        logger.info(
            f"Embedded {len(texts)} texts in {len(tasks)} batches",
            extra={"chunk_count": len(texts)},
        )
        return outputs

    async def _embed_with_retries(self, inputs: List[str], batch_start: int) -> List[Vector]:
        attempt = 0
        while True:
            try:
                payload = await self.backend.feature_extraction(inputs)
                return decode_embeddings(payload, len(inputs))
            except BatchSizeMismatchError:
                raise
            except Exception as e:
                attempt += 1
                logger.debug(
                    f"Embedding attempt {attempt} failed: {str(e)}",
                    extra={"attempt": attempt, "batch_start": batch_start},
                )
                if attempt > self.max_retries:
                    raise EmbeddingError(
                        f"Failed embedding batch at index {batch_start} after {self.max_retries} retries: {str(e)}"
                    ) from e
                EMBEDDING_RETRIES.inc()
                jitter = 0.5 + random.random() * 0.5
                await asyncio.sleep(self.retry_delay_ms * (2 ** (attempt - 1)) * jitter / 1000.0)

    async def close(self) -> None:
        """Close the backend if it holds resources."""
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
