"""OpenAI LLM adapter implementation.

- Endpoint: POST https://api.openai.com/v1/chat/completions
- Headers: Authorization: Bearer <key>, Content-Type: application/json
- Streaming: Server-Sent Events with data: {...} format, terminal data: [DONE]
- Usage is requested with stream_options.include_usage and arrives in a final
  chunk with empty choices; it is attached to the terminal LLMChunk
- Tool calls stream as indexed fragments (id and name first, then argument
  text); they are emitted once the choice reports a finish_reason
- Reasoning text is read from delta.reasoning_content when the endpoint
  provides it (OpenAI-compatible reasoning models)
"""

import json
from collections.abc import AsyncIterator

import httpx

from chorus.logging import get_logger
from chorus.services.llm.adapter import LLMAdapter
from chorus.services.llm.errors import LLMError, LLMErrorClass
from chorus.services.llm.types import (
    FileContent,
    LLMChunk,
    LLMRequest,
    LLMResponse,
    LLMToolCall,
    LLMUsage,
    TextContent,
    ToolCallContent,
    ToolResultContent,
    Turn,
)

logger = get_logger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


def _usage_from(data: dict | None) -> LLMUsage | None:
    if not data:
        return None
    return LLMUsage(
        prompt_tokens=data.get("prompt_tokens"),
        completion_tokens=data.get("completion_tokens"),
        total_tokens=data.get("total_tokens"),
    )


class OpenAIAdapter(LLMAdapter):
    """OpenAI chat completions adapter."""

    provider = "openai"

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        response = await self._client.post(
            OPENAI_CHAT_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "OpenAI response missing choices",
                provider=self.provider,
            )

        return LLMResponse(
            text=choices[0].get("message", {}).get("content") or "",
            usage=_usage_from(data.get("usage")),
            provider_request_id=response.headers.get("x-request-id") or data.get("id"),
        )

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[LLMChunk]:
        async with self._client.stream(
            "POST",
            OPENAI_CHAT_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            if response.is_error:
                # Load the error body so the router can classify it
                await response.aread()
            response.raise_for_status()

            provider_request_id = response.headers.get("x-request-id")
            usage: LLMUsage | None = None
            finish_reason: str | None = None
            # index -> {"id", "name", "arguments"}
            pending_calls: dict[int, dict[str, str]] = {}
            received_done = False

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue

                data_str = line[6:]
                if data_str == "[DONE]":
                    received_done = True
                    break

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                if data.get("usage"):
                    usage = _usage_from(data["usage"])

                choices = data.get("choices") or []
                if not choices:
                    continue

                choice = choices[0]
                delta = choice.get("delta") or {}

                reasoning = delta.get("reasoning_content")
                if reasoning:
                    yield LLMChunk(delta_text="", done=False, delta_reasoning=reasoning)

                content = delta.get("content")
                if content:
                    yield LLMChunk(delta_text=content, done=False)

                for fragment in delta.get("tool_calls") or []:
                    entry = pending_calls.setdefault(
                        fragment.get("index", 0), {"id": "", "name": "", "arguments": ""}
                    )
                    if fragment.get("id"):
                        entry["id"] = fragment["id"]
                    function = fragment.get("function") or {}
                    if function.get("name"):
                        entry["name"] = function["name"]
                    if function.get("arguments"):
                        entry["arguments"] += function["arguments"]

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
                    for index in sorted(pending_calls):
                        entry = pending_calls[index]
                        yield LLMChunk(
                            delta_text="",
                            done=False,
                            tool_call=LLMToolCall(
                                id=entry["id"],
                                name=entry["name"],
                                arguments=self._parse_arguments(entry["arguments"]),
                            ),
                        )
                    pending_calls.clear()

            if not received_done:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "OpenAI stream ended without [DONE] marker",
                    provider=self.provider,
                )

            yield LLMChunk(
                delta_text="",
                done=True,
                usage=usage,
                provider_request_id=provider_request_id,
                finish_reason=finish_reason,
            )

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict:
        messages: list[dict] = []
        for turn in req.messages:
            messages.extend(self._turn_to_messages(turn))

        body: dict = {
            "model": req.model_name,
            "messages": messages,
            "stream": stream,
        }

        if req.reasoning:
            # Reasoning models reject max_tokens and temperature
            body["max_completion_tokens"] = req.max_tokens
            body["reasoning_effort"] = "medium"
        else:
            body["max_tokens"] = req.max_tokens
            if req.temperature is not None:
                body["temperature"] = req.temperature

        if stream:
            body["stream_options"] = {"include_usage": True}

        if req.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in req.tools
            ]

        return body

    def _turn_to_messages(self, turn: Turn) -> list[dict]:
        """Convert a Turn to one or more OpenAI messages.

        A tool turn becomes one "tool" message per result.
        """
        if isinstance(turn.content, str):
            return [{"role": turn.role, "content": turn.content}]

        if turn.role == "tool":
            return [
                {"role": "tool", "tool_call_id": part.tool_call_id, "content": part.output}
                for part in turn.content
                if isinstance(part, ToolResultContent)
            ]

        if turn.role == "assistant":
            message: dict = {"role": "assistant", "content": turn.text or None}
            calls = [p for p in turn.content if isinstance(p, ToolCallContent)]
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {"name": call.tool_name, "arguments": json.dumps(call.input)},
                    }
                    for call in calls
                ]
            return [message]

        parts: list[dict] = []
        for part in turn.content:
            if isinstance(part, TextContent):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, FileContent):
                if part.media_type.startswith("image/"):
                    parts.append({"type": "image_url", "image_url": {"url": part.url}})
                else:
                    label = part.filename or part.url
                    parts.append({"type": "text", "text": f"[Attached file: {label}]"})
        return [{"role": turn.role, "content": parts}]
