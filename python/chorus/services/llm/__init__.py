"""LLM adapter layer for provider-agnostic LLM integration.

Provides a unified interface for calling OpenAI and Anthropic models:

- Provider adapters with async support (non-streaming + streaming, tool calls)
- Error classification and normalization
- Prompt text (provider-agnostic)
- Feature-flag enforcement

Usage:
    from chorus.services.llm import LLMRouter, LLMRequest, Turn

    router = LLMRouter(httpx_client, api_keys={"openai": "sk-..."})
    request = LLMRequest(
        model_name="gpt-4o-mini",
        messages=[Turn(role="user", content="Hello!")],
        max_tokens=100,
    )
    response = await router.generate("openai", request)
"""

from chorus.services.llm.adapter import LLMAdapter
from chorus.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from chorus.services.llm.prompt import DEFAULT_SYSTEM_PROMPT, build_system_prompt
from chorus.services.llm.router import LLMRouter
from chorus.services.llm.types import (
    LLMCallContext,
    LLMChunk,
    LLMOperation,
    LLMRequest,
    LLMResponse,
    LLMToolCall,
    LLMUsage,
    ToolSpec,
    Turn,
)

__all__ = [
    "Turn",
    "ToolSpec",
    "LLMRequest",
    "LLMResponse",
    "LLMChunk",
    "LLMToolCall",
    "LLMUsage",
    "LLMOperation",
    "LLMCallContext",
    "LLMAdapter",
    "LLMRouter",
    "LLMError",
    "LLMErrorClass",
    "classify_provider_error",
    "build_system_prompt",
    "DEFAULT_SYSTEM_PROMPT",
]
