"""Tests for the LLM adapter layer.

Test coverage per provider:
- non-streaming success
- streaming text, reasoning and tool calls
- usage only on the terminal chunk
- HTTP errors surface as httpx.HTTPStatusError from the adapter
- streams without a terminal marker raise E_LLM_PROVIDER_DOWN

Router tests cover availability, error normalization and call logging.
All HTTP is mocked with respx; no live provider calls.
"""

import json

import httpx
import pytest
import respx

from chorus.services.llm import (
    LLMChunk,
    LLMError,
    LLMErrorClass,
    LLMRequest,
    LLMRouter,
    LLMUsage,
    ToolSpec,
    Turn,
    build_system_prompt,
    classify_provider_error,
)
from chorus.services.llm.anthropic_adapter import ANTHROPIC_MESSAGES_URL, AnthropicAdapter
from chorus.services.llm.openai_adapter import OPENAI_CHAT_URL, OpenAIAdapter
from chorus.services.llm.prompt import DEFAULT_SYSTEM_PROMPT, parse_lines
from chorus.services.llm.types import (
    FileContent,
    TextContent,
    ToolCallContent,
    ToolResultContent,
)


def _openai_sse(*events: dict, done: bool = True) -> str:
    lines = [f"data: {json.dumps(e)}" for e in events]
    if done:
        lines.append("data: [DONE]")
    return "\n\n".join(lines) + "\n\n"


def _anthropic_sse(*events: dict, stop: bool = True) -> str:
    blocks = [f"event: {e['type']}\ndata: {json.dumps(e)}" for e in events]
    if stop:
        blocks.append('event: message_stop\ndata: {"type": "message_stop"}')
    return "\n\n".join(blocks) + "\n\n"


async def _drain(stream) -> list[LLMChunk]:
    return [chunk async for chunk in stream]


@pytest.fixture
def llm_request():
    return LLMRequest(
        model_name="test-model",
        messages=[
            Turn(role="system", content="You are helpful."),
            Turn(role="user", content="Hello!"),
        ],
        max_tokens=100,
        temperature=0.7,
    )


WEATHER_TOOL = ToolSpec(
    name="getWeather",
    description="Current weather for a city",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}},
)


# =============================================================================
# OpenAI
# =============================================================================


class TestOpenAIAdapter:
    @pytest.mark.asyncio
    @respx.mock
    async def test_nonstream_success(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).respond(
            200,
            json={
                "id": "chatcmpl-1",
                "choices": [{"message": {"content": "Hello! How can I help?"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 8, "total_tokens": 18},
            },
            headers={"x-request-id": "req-test-123"},
        )

        response = await OpenAIAdapter(httpx_client).generate(
            llm_request, api_key="sk-test", timeout_s=30
        )

        assert response.text == "Hello! How can I help?"
        assert response.usage == LLMUsage(prompt_tokens=10, completion_tokens=8, total_tokens=18)
        assert response.provider_request_id == "req-test-123"

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_body(self, httpx_client, llm_request):
        route = respx.post(OPENAI_CHAT_URL).respond(
            200, json={"choices": [{"message": {"content": "ok"}}]}
        )

        await OpenAIAdapter(httpx_client).generate(llm_request, api_key="sk-test", timeout_s=30)

        sent = json.loads(route.calls.last.request.content)
        assert route.calls.last.request.headers["authorization"] == "Bearer sk-test"
        assert sent["messages"][0] == {"role": "system", "content": "You are helpful."}
        assert sent["max_tokens"] == 100
        assert sent["temperature"] == 0.7
        assert sent["stream"] is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_choices_is_provider_down(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).respond(200, json={"choices": []})

        with pytest.raises(LLMError) as exc_info:
            await OpenAIAdapter(httpx_client).generate(
                llm_request, api_key="sk-test", timeout_s=30
            )

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_text_and_usage(self, httpx_client, llm_request):
        body = _openai_sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
        )
        respx.post(OPENAI_CHAT_URL).respond(
            200, content=body, headers={"x-request-id": "req-stream"}
        )

        chunks = await _drain(
            OpenAIAdapter(httpx_client).generate_stream(
                llm_request, api_key="sk-test", timeout_s=30
            )
        )

        assert "".join(c.delta_text for c in chunks) == "Hello"
        assert [c.done for c in chunks] == [False, False, True]
        assert all(c.usage is None for c in chunks[:-1])
        assert chunks[-1].usage.prompt_tokens == 4
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].provider_request_id == "req-stream"

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_tool_call_fragments(self, httpx_client, llm_request):
        body = _openai_sse(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_1", "function": {"name": "getWeather"}}
                            ]
                        }
                    }
                ]
            },
            {
                "choices": [
                    {"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"ci'}}]}}
                ]
            },
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [{"index": 0, "function": {"arguments": 'ty":"Oslo"}'}}]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            },
        )
        route = respx.post(OPENAI_CHAT_URL).respond(200, content=body)
        request = LLMRequest(
            model_name="gpt-4o-mini",
            messages=[Turn(role="user", content="Weather in Oslo?")],
            max_tokens=100,
            tools=(WEATHER_TOOL,),
        )

        chunks = await _drain(
            OpenAIAdapter(httpx_client).generate_stream(request, api_key="sk-test", timeout_s=30)
        )

        call = chunks[0].tool_call
        assert call.id == "call_1"
        assert call.name == "getWeather"
        assert call.arguments == {"city": "Oslo"}
        assert chunks[-1].finish_reason == "tool_calls"
        sent = json.loads(route.calls.last.request.content)
        assert sent["tools"][0]["function"]["name"] == "getWeather"
        assert sent["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_reasoning(self, httpx_client):
        body = _openai_sse(
            {"choices": [{"delta": {"reasoning_content": "thinking..."}}]},
            {"choices": [{"delta": {"content": "answer"}, "finish_reason": "stop"}]},
        )
        route = respx.post(OPENAI_CHAT_URL).respond(200, content=body)
        request = LLMRequest(
            model_name="o4-mini",
            messages=[Turn(role="user", content="Why?")],
            max_tokens=500,
            temperature=0.5,
            reasoning=True,
        )

        chunks = await _drain(
            OpenAIAdapter(httpx_client).generate_stream(request, api_key="sk-test", timeout_s=30)
        )

        assert chunks[0].delta_reasoning == "thinking..."
        assert chunks[1].delta_text == "answer"
        sent = json.loads(route.calls.last.request.content)
        assert sent["max_completion_tokens"] == 500
        assert "temperature" not in sent

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_without_done_marker(self, httpx_client, llm_request):
        body = _openai_sse({"choices": [{"delta": {"content": "cut"}}]}, done=False)
        respx.post(OPENAI_CHAT_URL).respond(200, content=body)

        with pytest.raises(LLMError) as exc_info:
            await _drain(
                OpenAIAdapter(httpx_client).generate_stream(
                    llm_request, api_key="sk-test", timeout_s=30
                )
            )

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_tool_arguments(self, httpx_client, llm_request):
        body = _openai_sse(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call_1",
                                    "function": {"name": "getWeather", "arguments": "{oops"},
                                }
                            ]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            }
        )
        respx.post(OPENAI_CHAT_URL).respond(200, content=body)

        with pytest.raises(LLMError, match="not valid JSON"):
            await _drain(
                OpenAIAdapter(httpx_client).generate_stream(
                    llm_request, api_key="sk-test", timeout_s=30
                )
            )

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_raises(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).respond(429, json={"error": {"message": "slow down"}})

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await OpenAIAdapter(httpx_client).generate(
                llm_request, api_key="sk-test", timeout_s=30
            )

        assert exc_info.value.response.status_code == 429

    def test_structured_turns(self, httpx_client):
        adapter = OpenAIAdapter(httpx_client)
        assistant = Turn(
            role="assistant",
            content=(
                TextContent("Let me check."),
                ToolCallContent("call_1", "getWeather", {"city": "Oslo"}),
            ),
        )
        tool = Turn(
            role="tool",
            content=(ToolResultContent("call_1", "getWeather", '{"temp": 3}'),),
        )
        user = Turn(
            role="user",
            content=(
                TextContent("What is this?"),
                FileContent(url="https://files.example.com/a.png", media_type="image/png"),
            ),
        )

        assert adapter._turn_to_messages(assistant)[0]["tool_calls"][0]["function"] == {
            "name": "getWeather",
            "arguments": '{"city": "Oslo"}',
        }
        assert adapter._turn_to_messages(tool) == [
            {"role": "tool", "tool_call_id": "call_1", "content": '{"temp": 3}'}
        ]
        assert adapter._turn_to_messages(user)[0]["content"][1] == {
            "type": "image_url",
            "image_url": {"url": "https://files.example.com/a.png"},
        }


# =============================================================================
# Anthropic
# =============================================================================


class TestAnthropicAdapter:
    @pytest.mark.asyncio
    @respx.mock
    async def test_nonstream_success(self, httpx_client, llm_request):
        route = respx.post(ANTHROPIC_MESSAGES_URL).respond(
            200,
            json={
                "id": "msg_1",
                "content": [{"type": "text", "text": "Hi there"}],
                "usage": {"input_tokens": 12, "output_tokens": 3},
            },
        )

        response = await AnthropicAdapter(httpx_client).generate(
            llm_request, api_key="sk-ant", timeout_s=30
        )

        assert response.text == "Hi there"
        assert response.usage.total_tokens == 15
        assert response.provider_request_id == "msg_1"
        sent = json.loads(route.calls.last.request.content)
        assert sent["system"] == "You are helpful."
        assert sent["messages"] == [{"role": "user", "content": "Hello!"}]
        assert route.calls.last.request.headers["x-api-key"] == "sk-ant"

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_text_tool_and_usage(self, httpx_client, llm_request):
        body = _anthropic_sse(
            {
                "type": "message_start",
                "message": {"id": "msg_2", "usage": {"input_tokens": 20, "output_tokens": 1}},
            },
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
            {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "text_delta", "text": "On it"},
            },
            {"type": "content_block_stop", "index": 0},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "getWeather"},
            },
            {
                "type": "content_block_delta",
                "index": 1,
                "delta": {"type": "input_json_delta", "partial_json": '{"city": '},
            },
            {
                "type": "content_block_delta",
                "index": 1,
                "delta": {"type": "input_json_delta", "partial_json": '"Oslo"}'},
            },
            {"type": "content_block_stop", "index": 1},
            {
                "type": "message_delta",
                "delta": {"stop_reason": "tool_use"},
                "usage": {"output_tokens": 9},
            },
        )
        respx.post(ANTHROPIC_MESSAGES_URL).respond(200, content=body)

        chunks = await _drain(
            AnthropicAdapter(httpx_client).generate_stream(
                llm_request, api_key="sk-ant", timeout_s=30
            )
        )

        assert chunks[0].delta_text == "On it"
        assert chunks[1].tool_call.arguments == {"city": "Oslo"}
        terminal = chunks[-1]
        assert terminal.done is True
        assert terminal.finish_reason == "tool_use"
        assert terminal.provider_request_id == "msg_2"
        assert terminal.usage == LLMUsage(prompt_tokens=20, completion_tokens=9, total_tokens=29)

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_thinking(self, httpx_client):
        body = _anthropic_sse(
            {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "thinking_delta", "thinking": "hmm"},
            },
        )
        route = respx.post(ANTHROPIC_MESSAGES_URL).respond(200, content=body)
        request = LLMRequest(
            model_name="claude-sonnet",
            messages=[Turn(role="user", content="Think")],
            max_tokens=800,
            temperature=0.3,
            reasoning=True,
        )

        chunks = await _drain(
            AnthropicAdapter(httpx_client).generate_stream(request, api_key="sk-ant", timeout_s=30)
        )

        assert chunks[0].delta_reasoning == "hmm"
        sent = json.loads(route.calls.last.request.content)
        assert sent["thinking"] == {"type": "enabled", "budget_tokens": 1024}
        assert sent["max_tokens"] == 2048
        assert "temperature" not in sent

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_overloaded_error_event(self, httpx_client, llm_request):
        body = _anthropic_sse(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            stop=False,
        )
        respx.post(ANTHROPIC_MESSAGES_URL).respond(200, content=body)

        with pytest.raises(LLMError) as exc_info:
            await _drain(
                AnthropicAdapter(httpx_client).generate_stream(
                    llm_request, api_key="sk-ant", timeout_s=30
                )
            )

        assert exc_info.value.error_class == LLMErrorClass.RATE_LIMIT

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_without_message_stop(self, httpx_client, llm_request):
        body = _anthropic_sse(
            {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "text_delta", "text": "cut"},
            },
            stop=False,
        )
        respx.post(ANTHROPIC_MESSAGES_URL).respond(200, content=body)

        with pytest.raises(LLMError) as exc_info:
            await _drain(
                AnthropicAdapter(httpx_client).generate_stream(
                    llm_request, api_key="sk-ant", timeout_s=30
                )
            )

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN

    def test_tool_results_travel_as_user_turn(self, httpx_client):
        adapter = AnthropicAdapter(httpx_client)
        tool = Turn(
            role="tool",
            content=(ToolResultContent("toolu_1", "getWeather", "sunny", is_error=False),),
        )

        assert adapter._turn_to_message(tool) == {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": "toolu_1",
                    "content": "sunny",
                    "is_error": False,
                }
            ],
        }


# =============================================================================
# Error classification
# =============================================================================


class TestClassifyProviderError:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, LLMErrorClass.INVALID_KEY),
            (403, LLMErrorClass.INVALID_KEY),
            (429, LLMErrorClass.RATE_LIMIT),
            (404, LLMErrorClass.MODEL_NOT_AVAILABLE),
            (500, LLMErrorClass.PROVIDER_DOWN),
            (503, LLMErrorClass.PROVIDER_DOWN),
            (None, LLMErrorClass.PROVIDER_DOWN),
        ],
    )
    def test_status_codes(self, status, expected):
        assert classify_provider_error("openai", status, None, None) == expected

    def test_openai_context_length(self):
        body = {"error": {"code": "context_length_exceeded", "message": "too many tokens"}}
        assert classify_provider_error("openai", 400, body, None) == (
            LLMErrorClass.CONTEXT_TOO_LARGE
        )

    def test_anthropic_prompt_too_long(self):
        body = {"error": {"type": "invalid_request_error", "message": "prompt is too long"}}
        assert classify_provider_error("anthropic", 400, body, None) == (
            LLMErrorClass.CONTEXT_TOO_LARGE
        )

    def test_timeout_exception(self):
        exc = httpx.ReadTimeout("timed out")
        assert classify_provider_error("openai", None, None, exc) == LLMErrorClass.TIMEOUT


# =============================================================================
# Router
# =============================================================================


class TestLLMRouter:
    def test_provider_availability(self, httpx_client):
        router = LLMRouter(
            httpx_client,
            api_keys={"openai": "sk-test", "anthropic": None},
            enable_anthropic=True,
        )

        assert router.is_provider_available("openai") is True
        assert router.is_provider_available("anthropic") is False
        assert router.is_provider_available("gemini") is False

    def test_disabled_provider(self, httpx_client):
        router = LLMRouter(httpx_client, api_keys={"openai": "sk-test"}, enable_openai=False)

        with pytest.raises(LLMError) as exc_info:
            router.resolve_adapter("openai")

        assert exc_info.value.error_class == LLMErrorClass.MODEL_NOT_AVAILABLE
        assert router.is_provider_available("openai") is False

    @pytest.mark.asyncio
    async def test_missing_key(self, httpx_client, llm_request):
        router = LLMRouter(httpx_client, api_keys={})

        with pytest.raises(LLMError) as exc_info:
            await router.generate("openai", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.INVALID_KEY

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_normalized(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).respond(
            401, json={"error": {"message": "bad key"}}, headers={"x-request-id": "req-9"}
        )
        router = LLMRouter(httpx_client, api_keys={"openai": "sk-test"})

        with pytest.raises(LLMError) as exc_info:
            await router.generate("openai", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.INVALID_KEY
        assert exc_info.value.provider == "openai"

    @pytest.mark.asyncio
    @respx.mock
    async def test_stream_error_normalized(self, httpx_client, llm_request):
        respx.post(ANTHROPIC_MESSAGES_URL).respond(
            400, json={"error": {"type": "invalid_request_error", "message": "prompt too long"}}
        )
        router = LLMRouter(httpx_client, api_keys={"anthropic": "sk-ant"})

        with pytest.raises(LLMError) as exc_info:
            await _drain(router.generate_stream("anthropic", llm_request))

        assert exc_info.value.error_class == LLMErrorClass.CONTEXT_TOO_LARGE

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_normalized(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        router = LLMRouter(httpx_client, api_keys={"openai": "sk-test"})

        with pytest.raises(LLMError) as exc_info:
            await router.generate("openai", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.TIMEOUT

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error_normalized(self, httpx_client, llm_request):
        respx.post(OPENAI_CHAT_URL).mock(side_effect=httpx.ConnectError("refused"))
        router = LLMRouter(httpx_client, api_keys={"openai": "sk-test"})

        with pytest.raises(LLMError) as exc_info:
            await _drain(router.generate_stream("openai", llm_request))

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN


# =============================================================================
# Prompt text
# =============================================================================


class TestPrompt:
    def test_system_prompt_without_project(self):
        assert build_system_prompt(None) == DEFAULT_SYSTEM_PROMPT

    def test_system_prompt_with_project_instructions(self):
        prompt = build_system_prompt("Answer in French.")
        assert prompt.startswith(DEFAULT_SYSTEM_PROMPT)
        assert prompt.endswith("Project instructions:\nAnswer in French.")

    def test_parse_lines(self):
        text = '1. First question\n- "Second question"\n\n* third\n4. fourth'
        assert parse_lines(text, 3) == ["First question", "Second question", "third"]
