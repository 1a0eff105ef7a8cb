"""LLM router for adapter selection and error normalization.

- Resolves adapter based on provider name
- Checks feature flags and platform key presence for provider availability
- Wraps adapter calls with error normalization (one place, not per adapter)
- Emits llm.request.started / llm.request.finished / llm.request.failed events
  through safe_kv()

Error handling:
- Provider 401/403 → E_LLM_INVALID_KEY
- Provider 429 → E_LLM_RATE_LIMIT
- Timeout → E_LLM_TIMEOUT
- Context too large → E_LLM_CONTEXT_TOO_LARGE
- Other → E_LLM_PROVIDER_DOWN
"""

import time
from collections.abc import AsyncIterator

import httpx

from chorus.logging import get_logger
from chorus.services.llm.adapter import LLMAdapter
from chorus.services.llm.anthropic_adapter import AnthropicAdapter
from chorus.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from chorus.services.llm.openai_adapter import OpenAIAdapter
from chorus.services.llm.types import (
    LLMCallContext,
    LLMChunk,
    LLMOperation,
    LLMRequest,
    LLMResponse,
    Turn,
)
from chorus.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 45


def _turn_chars(turn: Turn) -> int:
    return len(turn.text)


def _base_log_fields(
    provider: str,
    req: LLMRequest,
    streaming: bool,
    call_ctx: LLMCallContext | None,
) -> dict:
    fields: dict = {
        "provider": provider,
        "model_name": req.model_name,
        "streaming": streaming,
        "tool_count": len(req.tools),
        "llm_operation": call_ctx.operation.value if call_ctx else LLMOperation.OTHER.value,
    }
    if call_ctx is not None:
        if call_ctx.chat_id:
            fields["chat_id"] = call_ctx.chat_id
        if call_ctx.assistant_message_id:
            fields["assistant_message_id"] = call_ctx.assistant_message_id
    return fields


class LLMRouter:
    """Routes LLM requests to provider adapters using platform API keys."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_keys: dict[str, str | None] | None = None,
        enable_openai: bool = True,
        enable_anthropic: bool = True,
    ):
        self._client = client
        self._api_keys = dict(api_keys or {})
        self._feature_flags = {
            "openai": enable_openai,
            "anthropic": enable_anthropic,
        }
        self._adapters: dict[str, LLMAdapter] = {
            "openai": OpenAIAdapter(client),
            "anthropic": AnthropicAdapter(client),
        }

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Get adapter for provider, checking feature flags.

        Raises:
            LLMError: If provider is unknown or disabled.
        """
        if provider not in self._adapters:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Unknown provider: {provider}",
                provider=provider,
            )

        if not self._feature_flags.get(provider, False):
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Provider {provider} is disabled",
                provider=provider,
            )

        return self._adapters[provider]

    def is_provider_available(self, provider: str) -> bool:
        """True if the provider is known, enabled, and has a platform key."""
        return (
            provider in self._adapters
            and self._feature_flags.get(provider, False)
            and bool(self._api_keys.get(provider))
        )

    def _api_key(self, provider: str) -> str:
        key = self._api_keys.get(provider)
        if not key:
            raise LLMError(
                LLMErrorClass.INVALID_KEY,
                f"No API key configured for {provider}",
                provider=provider,
            )
        return key

    async def generate(
        self,
        provider: str,
        req: LLMRequest,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        call_context: LLMCallContext | None = None,
    ) -> LLMResponse:
        """Non-streaming LLM generation with error normalization.

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        api_key = self._api_key(provider)
        base = _base_log_fields(provider, req, streaming=False, call_ctx=call_context)

        logger.info(
            "llm.request.started",
            **safe_kv(**base, message_chars=sum(_turn_chars(m) for m in req.messages)),
        )
        start = time.monotonic()

        try:
            response = await adapter.generate(req, api_key=api_key, timeout_s=timeout_s)
        except LLMError:
            raise
        except Exception as e:
            raise self._normalize_error(e, provider, base, start) from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=int((time.monotonic() - start) * 1000),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                provider_request_id=response.provider_request_id,
            ),
        )
        return response

    async def generate_stream(
        self,
        provider: str,
        req: LLMRequest,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        call_context: LLMCallContext | None = None,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming LLM generation with error normalization.

        Yields:
            LLMChunk objects until terminal chunk (done=True).

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        api_key = self._api_key(provider)
        base = _base_log_fields(provider, req, streaming=True, call_ctx=call_context)

        logger.info(
            "llm.request.started",
            **safe_kv(**base, message_chars=sum(_turn_chars(m) for m in req.messages)),
        )
        start = time.monotonic()

        try:
            async for chunk in adapter.generate_stream(req, api_key=api_key, timeout_s=timeout_s):
                if chunk.done:
                    usage = chunk.usage
                    logger.info(
                        "llm.request.finished",
                        **safe_kv(
                            **base,
                            outcome="success",
                            latency_ms=int((time.monotonic() - start) * 1000),
                            tokens_input=usage.prompt_tokens if usage else None,
                            tokens_output=usage.completion_tokens if usage else None,
                            tokens_total=usage.total_tokens if usage else None,
                            provider_request_id=chunk.provider_request_id,
                            finish_reason=chunk.finish_reason,
                        ),
                    )
                yield chunk
        except LLMError:
            raise
        except Exception as e:
            raise self._normalize_error(e, provider, base, start) from e

    def _normalize_error(
        self, exc: Exception, provider: str, base: dict, start: float
    ) -> LLMError:
        """Map an adapter exception to an LLMError and log the failure."""
        provider_request_id = None
        if isinstance(exc, httpx.TimeoutException):
            error = LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider)
        elif isinstance(exc, httpx.HTTPStatusError):
            json_body = self._safe_parse_json(exc.response)
            error_class = classify_provider_error(
                provider, exc.response.status_code, json_body, None
            )
            provider_request_id = exc.response.headers.get(
                "x-request-id"
            ) or exc.response.headers.get("request-id")
            error = LLMError(
                error_class,
                f"Provider returned HTTP {exc.response.status_code}",
                provider=provider,
            )
        elif isinstance(exc, httpx.NetworkError):
            error = LLMError(LLMErrorClass.PROVIDER_DOWN, "Network error", provider=provider)
        else:
            error = LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(exc).__name__}",
                provider=provider,
            )

        logger.error(
            "llm.request.failed",
            **safe_kv(
                **base,
                outcome="error",
                error_class=error.error_class.value,
                latency_ms=int((time.monotonic() - start) * 1000),
                provider_request_id=provider_request_id,
            ),
        )
        return error

    def _safe_parse_json(self, response: httpx.Response) -> dict | None:
        """Parse JSON from an error response; streamed bodies may be unread."""
        try:
            return response.json()
        except Exception:
            return None
