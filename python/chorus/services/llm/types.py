"""Shared type definitions for the LLM adapter layer.

- Turn: Provider-agnostic conversation turn (string or structured content)
- ToolSpec: A callable tool advertised to the model
- LLMRequest: Request to LLM adapter
- LLMUsage: Token usage from provider response
- LLMResponse: Complete response from non-streaming call
- LLMToolCall: A fully received tool call request
- LLMChunk: Single chunk from streaming response

Streaming invariants:
- Chunks with done=False MUST have usage=None
- Exactly ONE terminal chunk with done=True
- Terminal chunk MAY have usage, finish_reason and provider_request_id
- Tool calls are emitted as non-terminal chunks once their arguments are complete
- If provider stream ends without terminal marker: raise E_LLM_PROVIDER_DOWN
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class TextContent:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class FileContent:
    """Non-text input (image or file) referenced by URL."""

    url: str
    media_type: str
    filename: str | None = None
    type: Literal["file"] = "file"


@dataclass(frozen=True)
class ToolCallContent:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultContent:
    """Result of a tool call, serialized to text for the model."""

    tool_call_id: str
    tool_name: str
    output: str
    is_error: bool = False
    type: Literal["tool-result"] = "tool-result"


ContentPart = TextContent | FileContent | ToolCallContent | ToolResultContent


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn.

    Attributes:
        role: One of "system", "user", "assistant", or "tool"
        content: Plain text, or an ordered tuple of content parts
    """

    role: Role
    content: str | tuple[ContentPart, ...]

    @property
    def text(self) -> str:
        """Concatenated text of the turn, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextContent))


@dataclass(frozen=True)
class ToolSpec:
    """A tool advertised to the model.

    Attributes:
        name: Tool name the model calls
        description: Natural-language description for the model
        parameters: JSON schema of the tool input
    """

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    def merged(self, other: "LLMUsage | None") -> "LLMUsage":
        """Combine two partial usage reports (e.g. Anthropic start + delta)."""
        if other is None:
            return self
        prompt = other.prompt_tokens if other.prompt_tokens is not None else self.prompt_tokens
        completion = (
            other.completion_tokens
            if other.completion_tokens is not None
            else self.completion_tokens
        )
        if prompt is not None and completion is not None:
            total = prompt + completion
        else:
            total = other.total_tokens if other.total_tokens is not None else self.total_tokens
        return LLMUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(frozen=True)
class LLMRequest:
    """Request to LLM adapter.

    Attributes:
        model_name: Provider model identifier (e.g., "gpt-4o-mini")
        messages: List of Turn objects (system turn first if present)
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature, None uses provider default
        tools: Tools the model may call in this request
        reasoning: Ask the provider for reasoning output where supported
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None
    tools: tuple[ToolSpec, ...] = ()
    reasoning: bool = False


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from non-streaming call."""

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


@dataclass(frozen=True)
class LLMToolCall:
    """A tool call whose arguments have been fully received."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class LLMChunk:
    """Single chunk from streaming response.

    Exactly one of delta_text, delta_reasoning or tool_call carries payload on
    a non-terminal chunk.
    """

    delta_text: str
    done: bool
    usage: LLMUsage | None = None
    provider_request_id: str | None = None
    delta_reasoning: str = ""
    tool_call: LLMToolCall | None = None
    finish_reason: str | None = None

    def __post_init__(self):
        if not self.done and self.usage is not None:
            raise ValueError("Non-terminal chunks (done=False) must have usage=None")


class LLMOperation(str, Enum):
    """What an LLM call is for; drives log fields and cost labels."""

    CHAT_TURN = "chat_turn"
    DOCUMENT = "document"
    RESEARCH = "research"
    TITLE = "title"
    FOLLOWUPS = "followups"
    OTHER = "other"


@dataclass(frozen=True)
class LLMCallContext:
    """Observability metadata attached to one LLM call."""

    operation: LLMOperation = LLMOperation.OTHER
    chat_id: str | None = None
    assistant_message_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
