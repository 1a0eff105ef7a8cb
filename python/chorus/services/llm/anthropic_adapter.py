"""Anthropic LLM adapter implementation.

- Endpoint: POST https://api.anthropic.com/v1/messages
- Headers: x-api-key: <key>, anthropic-version: 2023-06-01, Content-Type: application/json

Turn conversion:
- System turn extracted to separate "system" field
- Assistant tool calls become tool_use blocks
- Tool results are sent back as a user turn of tool_result blocks

Streaming:
- message_start carries the message id and input token usage
- content_block_start opens text, thinking or tool_use blocks (by index)
- content_block_delta carries text_delta, thinking_delta or input_json_delta
- content_block_stop closes a block; a closed tool_use block is emitted
- message_delta carries stop_reason and output token usage
- Terminal: event: message_stop
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

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"
MIN_THINKING_BUDGET = 1024


class AnthropicAdapter(LLMAdapter):
    """Anthropic API adapter for messages endpoint.

    Handles conversion between Turn objects and Anthropic message format,
    including extracting system prompt to a separate field.
    """

    provider = "anthropic"

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming message generation."""
        response = await self._client.post(
            ANTHROPIC_MESSAGES_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming message generation using Server-Sent Events."""
        async with self._client.stream(
            "POST",
            ANTHROPIC_MESSAGES_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            if response.is_error:
                # Load the error body so the router can classify it
                await response.aread()
            response.raise_for_status()

            provider_request_id: str | None = None
            usage: LLMUsage | None = None
            stop_reason: str | None = None
            # block index -> {"id", "name", "json"}
            tool_blocks: dict[int, dict[str, str]] = {}
            received_stop = False

            async for line in response.aiter_lines():
                if not line:
                    continue

                if line.startswith("event: "):
                    if line[7:] == "message_stop":
                        received_stop = True
                        break
                    continue

                if not line.startswith("data: "):
                    continue

                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    continue

                event_type = data.get("type", "")

                if event_type == "message_start":
                    message = data.get("message", {})
                    provider_request_id = message.get("id")
                    usage = self._parse_usage(message.get("usage"))
                    continue

                if event_type == "content_block_start":
                    block = data.get("content_block", {})
                    if block.get("type") == "tool_use":
                        tool_blocks[data.get("index", 0)] = {
                            "id": block.get("id", ""),
                            "name": block.get("name", ""),
                            "json": "",
                        }
                    continue

                if event_type == "content_block_delta":
                    delta = data.get("delta", {})
                    delta_type = delta.get("type")
                    if delta_type == "text_delta" and delta.get("text"):
                        yield LLMChunk(delta_text=delta["text"], done=False)
                    elif delta_type == "thinking_delta" and delta.get("thinking"):
                        yield LLMChunk(delta_text="", done=False, delta_reasoning=delta["thinking"])
                    elif delta_type == "input_json_delta":
                        entry = tool_blocks.get(data.get("index", 0))
                        if entry is not None:
                            entry["json"] += delta.get("partial_json", "")
                    continue

                if event_type == "content_block_stop":
                    entry = tool_blocks.pop(data.get("index", 0), None)
                    if entry is not None:
                        yield LLMChunk(
                            delta_text="",
                            done=False,
                            tool_call=LLMToolCall(
                                id=entry["id"],
                                name=entry["name"],
                                arguments=self._parse_arguments(entry["json"]),
                            ),
                        )
                    continue

                if event_type == "message_delta":
                    stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason
                    delta_usage = self._parse_usage(data.get("usage"))
                    if delta_usage is not None:
                        usage = delta_usage if usage is None else usage.merged(delta_usage)
                    continue

                if event_type == "error":
                    error = data.get("error", {})
                    error_class = (
                        LLMErrorClass.RATE_LIMIT
                        if error.get("type") == "overloaded_error"
                        else LLMErrorClass.PROVIDER_DOWN
                    )
                    raise LLMError(
                        error_class,
                        error.get("message") or "Anthropic stream error",
                        provider=self.provider,
                    )

            if not received_stop:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Anthropic stream ended without message_stop event",
                    provider=self.provider,
                )

            yield LLMChunk(
                delta_text="",
                done=True,
                usage=usage,
                provider_request_id=provider_request_id,
                finish_reason=stop_reason,
            )

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict:
        """Build request body from LLMRequest.

        Extracts system turn to separate field.
        """
        system_prompt = None
        messages = []

        for turn in req.messages:
            if turn.role == "system":
                system_prompt = turn.text
            else:
                messages.append(self._turn_to_message(turn))

        body: dict = {
            "model": req.model_name,
            "max_tokens": req.max_tokens,
            "messages": messages,
            "stream": stream,
        }

        if system_prompt:
            body["system"] = system_prompt

        if req.reasoning:
            # Extended thinking does not accept a temperature
            body["thinking"] = {
                "type": "enabled",
                "budget_tokens": max(MIN_THINKING_BUDGET, req.max_tokens // 2),
            }
            body["max_tokens"] = max(req.max_tokens, body["thinking"]["budget_tokens"] * 2)
        elif req.temperature is not None:
            body["temperature"] = req.temperature

        if req.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in req.tools
            ]

        return body

    def _turn_to_message(self, turn: Turn) -> dict:
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        blocks: list[dict] = []
        for part in turn.content:
            if isinstance(part, TextContent):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, FileContent):
                block_type = "image" if part.media_type.startswith("image/") else "document"
                blocks.append({"type": block_type, "source": {"type": "url", "url": part.url}})
            elif isinstance(part, ToolCallContent):
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": part.tool_call_id,
                        "name": part.tool_name,
                        "input": part.input,
                    }
                )
            elif isinstance(part, ToolResultContent):
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": part.tool_call_id,
                        "content": part.output,
                        "is_error": part.is_error,
                    }
                )

        # Tool results travel in a user turn
        role = "user" if turn.role == "tool" else turn.role
        return {"role": role, "content": blocks}

    def _parse_usage(self, usage_data: dict | None) -> LLMUsage | None:
        if not usage_data:
            return None
        input_tokens = usage_data.get("input_tokens")
        output_tokens = usage_data.get("output_tokens")
        total = None
        if input_tokens is not None and output_tokens is not None:
            total = input_tokens + output_tokens
        return LLMUsage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=total,
        )

    def _parse_response(self, data: dict) -> LLMResponse:
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        return LLMResponse(
            text=text,
            usage=self._parse_usage(data.get("usage")),
            provider_request_id=data.get("id"),
        )
