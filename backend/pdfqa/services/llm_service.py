"""LLM service for streaming chat completions from an OpenAI-compatible provider."""
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx
from openai import AsyncOpenAI

from pdfqa.exceptions import LLMError
from pdfqa.utils.logger import logger


@dataclass(frozen=True)
class TextDelta:
    """A piece of generated text."""

    text: str


@dataclass(frozen=True)
class EndOfStream:
    """The provider finished the completion."""


@dataclass(frozen=True)
class StreamFailure:
    """The provider stream broke while reading."""

    error: Exception


ReadOutcome = Union[TextDelta, EndOfStream, StreamFailure]


def _delta_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


class ProviderReader:
    """
    Reads an upstream completion stream one tagged outcome at a time.

    ``release()`` closes the upstream response and is idempotent; the
    number of effective releases is tracked in ``release_count``.
    """

    def __init__(self, stream: Any):
        self._stream = stream
        self._iterator = stream.__aiter__()
        self._finished = False
        self.released = False
        self.release_count = 0

    async def read(self) -> ReadOutcome:
        """Return the next outcome; after end or failure, always EndOfStream."""
        if self._finished or self.released:
            return EndOfStream()
        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._finished = True
            return EndOfStream()
        except Exception as e:
            self._finished = True
            return StreamFailure(e)
        return TextDelta(_delta_text(chunk))

    async def release(self) -> None:
        """Close the upstream stream exactly once."""
        if self.released:
            return
        self.released = True
        self.release_count += 1
        close = getattr(self._stream, "close", None)
        if close is None:
            close = getattr(self._stream, "aclose", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                logger.warning(f"Failed to release provider stream: {str(e)}")


class LLMService:
    """Service for streaming answers from the LLM provider."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "openrouter/free",
        max_tokens: Optional[int] = None,
        timeout_seconds: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize LLM service.

        Args:
            api_key: Provider API key
            base_url: OpenAI-compatible API base URL
            model: Model name to use
            max_tokens: Optional completion token cap
            timeout_seconds: HTTP timeout for provider calls
            client: Optional preconfigured client
        """
        if client is None and not api_key:
            raise ValueError("LLM_API_KEY environment variable is required")

        self.model = model
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            http_client=httpx.AsyncClient(timeout=timeout_seconds),
        )

    async def open_stream(
        self, system_prompt: str, question: str, temperature: float
    ) -> ProviderReader:
        """
        Start a streamed completion.

        Args:
            system_prompt: Assembled instructions and context
            question: Sanitized user question
            temperature: Sampling temperature

        Returns:
            ProviderReader over the completion stream

        Raises:
            LLMError: If the provider rejects the request
        """
        params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": question},
            ],
            "temperature": temperature,
            "stream": True,
        }
        if self.max_tokens:
            params["max_tokens"] = self.max_tokens

        try:
            stream = await self.client.chat.completions.create(**params)
        except Exception as e:
            logger.error(f"Error calling LLM provider: {str(e)}", exc_info=True)
            raise LLMError(f"Failed to start completion stream: {str(e)}") from e

        return ProviderReader(stream)

    async def close(self):
        """Close HTTP client."""
        await self.client.close()
