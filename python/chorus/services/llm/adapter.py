"""Abstract base class for LLM adapters.

Rules for adapters:
- Async with a shared httpx.AsyncClient
- No retries, no DB access, no logging of request/response bodies
- Raw provider errors bubble up to the router for classification
- Each adapter converts Turn/ToolSpec to its provider format internally
"""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from chorus.services.llm.errors import LLMError, LLMErrorClass
from chorus.services.llm.types import LLMChunk, LLMRequest, LLMResponse


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    provider: str = ""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @abstractmethod
    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming generation. Returns complete response.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
        """
        pass

    @abstractmethod
    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming generation. Yields chunks until done=True.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: If stream ends without proper terminal marker.
        """
        pass
        yield  # type: ignore

    def _parse_arguments(self, raw: str) -> dict:
        """Decode streamed tool-call arguments; empty means no arguments."""
        if not raw.strip():
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Tool call arguments were not valid JSON",
                provider=self.provider,
            ) from e
        if not isinstance(value, dict):
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Tool call arguments must be a JSON object",
                provider=self.provider,
            )
        return value
