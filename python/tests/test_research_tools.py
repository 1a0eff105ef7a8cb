"""Tests for webSearch, deepResearch, generateImage and the tool registry.

Tavily and the OpenAI images endpoint are mocked with respx.
"""

import json

import httpx
import pytest
import respx

from chorus.config import get_settings
from chorus.services.llm.types import LLMOperation
from chorus.services.tools import build_default_registry
from chorus.services.tools.deep_research import DeepResearchInput, DeepResearchTool
from chorus.services.tools.image import OPENAI_IMAGES_URL, GenerateImageInput, GenerateImageTool
from chorus.services.tools.registry import ToolError, ToolRegistry
from chorus.services.tools.web_search import (
    TAVILY_SEARCH_URL,
    SearchQuery,
    WebSearchInput,
    WebSearchTool,
    max_results_for,
)
from tests.helpers import RecordingStore, make_tool_context
from tests.support.fake_llm import FakeLLMRouter, reply


def _settings(**update):
    values = {"tavily_api_key": "tvly-test", "openai_api_key": "sk-test"}
    values.update(update)
    return get_settings().model_copy(update=values)


def _tavily_results(*urls: str) -> dict:
    return {
        "results": [
            {"title": f"Page {url[-1]}", "url": url, "content": f"About {url}"} for url in urls
        ]
    }


def _tavily_by_query(results_by_query: dict[str, dict | int | str]):
    """respx side effect answering each query from a table.

    An int answer is an error status; a str answer is a raw 200 body.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        query = json.loads(request.content)["query"]
        answer = results_by_query[query]
        if isinstance(answer, int):
            return httpx.Response(answer, json={"detail": "boom"})
        if isinstance(answer, str):
            return httpx.Response(200, text=answer)
        return httpx.Response(200, json=answer)

    return handler


# =============================================================================
# webSearch
# =============================================================================


class TestWebSearch:
    def test_max_results_follow_priority(self):
        assert max_results_for(1) == 5
        assert max_results_for(3) == 3
        assert max_results_for(5) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_results_deduplicated_across_queries(self, httpx_client):
        route = respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query(
                {
                    "first": _tavily_results("https://a.example/1", "https://b.example/2"),
                    "second": _tavily_results("https://b.example/2", "https://c.example/3"),
                }
            )
        )
        store = RecordingStore()
        ctx = make_tool_context(
            FakeLLMRouter(), store=store, http_client=httpx_client, settings=_settings()
        )
        args = WebSearchInput(
            search_queries=[SearchQuery(query="first"), SearchQuery(query="second", priority=1)]
        )

        result = await WebSearchTool().execute(args, ctx)

        first, second = result["searches"]
        assert [r["url"] for r in first["results"]] == [
            "https://a.example/1",
            "https://b.example/2",
        ]
        assert [r["url"] for r in second["results"]] == ["https://c.example/3"]

        sources = [c["url"] for c in store.chunks if c["type"] == "source-url"]
        assert sources == ["https://a.example/1", "https://b.example/2", "https://c.example/3"]

        sent = [json.loads(call.request.content) for call in route.calls]
        assert {s["query"]: s["max_results"] for s in sent} == {"first": 3, "second": 5}
        assert route.calls.last.request.headers["authorization"] == "Bearer tvly-test"

    @pytest.mark.asyncio
    @respx.mock
    async def test_progress_updates_replace_in_place(self, httpx_client):
        respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query({"only": _tavily_results("https://a.example/1")})
        )
        store = RecordingStore()
        ctx = make_tool_context(
            FakeLLMRouter(), store=store, http_client=httpx_client, settings=_settings()
        )

        await WebSearchTool().execute(
            WebSearchInput(search_queries=[SearchQuery(query="only")]), ctx
        )

        updates = [c for c in store.chunks if c["type"] == "data-researchUpdate"]
        assert [u["data"]["status"] for u in updates] == ["running", "completed"]
        assert updates[0]["id"] == updates[1]["id"]
        assert updates[1]["data"]["resultsCount"] == 1
        # Same id: the message keeps only the completed update
        research_parts = [p for p in ctx.writer.parts if p["type"] == "data-researchUpdate"]
        assert [p["data"]["status"] for p in research_parts] == ["completed"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_query_does_not_fail_others(self, httpx_client):
        respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query(
                {"ok": _tavily_results("https://a.example/1"), "broken": 500}
            )
        )
        ctx = make_tool_context(FakeLLMRouter(), http_client=httpx_client, settings=_settings())

        result = await WebSearchTool().execute(
            WebSearchInput(search_queries=[SearchQuery(query="ok"), SearchQuery(query="broken")]),
            ctx,
        )

        ok, broken = result["searches"]
        assert len(ok["results"]) == 1
        assert broken["results"] == []
        assert "500" in broken["error"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_response_is_a_query_error(self, httpx_client):
        respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query(
                {"ok": _tavily_results("https://a.example/1"), "garbled": "<html>oops"}
            )
        )
        ctx = make_tool_context(FakeLLMRouter(), http_client=httpx_client, settings=_settings())

        result = await WebSearchTool().execute(
            WebSearchInput(
                search_queries=[SearchQuery(query="ok"), SearchQuery(query="garbled")]
            ),
            ctx,
        )

        ok, garbled = result["searches"]
        assert len(ok["results"]) == 1
        assert garbled["results"] == []
        assert garbled["error"].startswith("Malformed search response")

    @pytest.mark.asyncio
    async def test_missing_key_reports_error_per_query(self, httpx_client):
        ctx = make_tool_context(
            FakeLLMRouter(), http_client=httpx_client, settings=_settings(tavily_api_key=None)
        )

        result = await WebSearchTool().execute(
            WebSearchInput(search_queries=[SearchQuery(query="anything")]), ctx
        )

        assert result["searches"][0]["error"] == "Web search is not configured"

    def test_query_count_bounded(self):
        with pytest.raises(ValueError):
            WebSearchInput(search_queries=[])
        with pytest.raises(ValueError):
            WebSearchInput(search_queries=[SearchQuery(query=str(i)) for i in range(7)])


# =============================================================================
# deepResearch
# =============================================================================


class TestDeepResearch:
    @pytest.mark.asyncio
    @respx.mock
    async def test_plans_searches_and_writes_report(self, httpx_client):
        respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query(
                {
                    "solar capacity 2024": _tavily_results("https://a.example/1"),
                    "wind capacity 2024": _tavily_results("https://b.example/2"),
                }
            )
        )
        router = FakeLLMRouter()
        router.queue_response("1. solar capacity 2024\n2. wind capacity 2024")
        router.queue_stream(reply("# Renewables\n", "Solar grew [Page 1](https://a.example/1)."))
        store = RecordingStore()
        ctx = make_tool_context(
            router, store=store, http_client=httpx_client, settings=_settings()
        )

        result = await DeepResearchTool().execute(
            DeepResearchInput(topic="Renewable growth in 2024", title="Renewables 2024"), ctx
        )

        assert result["title"] == "Renewables 2024"
        assert result["kind"] == "text"

        provider, plan_request, call_context = router.generate_calls[0]
        assert call_context.operation == LLMOperation.RESEARCH
        assert plan_request.messages[-1].content == "Renewable growth in 2024"

        report_request = router.stream_calls[0][1]
        assert "https://a.example/1" in report_request.messages[-1].text
        assert "https://b.example/2" in report_request.messages[-1].text

        updates = [
            c["data"]["title"]
            for c in store.chunks
            if c["type"] == "data-researchUpdate" and c["data"]["status"] == "completed"
        ]
        assert updates[0] == "Planning research"
        assert updates[-1] == "Writing final report"
        assert "data-textDelta" in store.types()
        assert ctx.costs.entries[0].event == "research-plan"

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_plan_falls_back_to_topic(self, httpx_client):
        route = respx.post(TAVILY_SEARCH_URL).mock(
            side_effect=_tavily_by_query({"tidal power": _tavily_results("https://t.example/1")})
        )
        router = FakeLLMRouter()
        router.queue_response("")
        router.queue_stream(reply("Report"))
        ctx = make_tool_context(router, http_client=httpx_client, settings=_settings())

        await DeepResearchTool().execute(
            DeepResearchInput(topic="tidal power", title="Tidal"), ctx
        )

        assert [json.loads(c.request.content)["query"] for c in route.calls] == ["tidal power"]


# =============================================================================
# generateImage
# =============================================================================


class TestGenerateImage:
    @pytest.mark.asyncio
    @respx.mock
    async def test_generates_image(self, httpx_client):
        route = respx.post(OPENAI_IMAGES_URL).respond(
            200,
            json={"data": [{"url": "https://img.example/1.png", "revised_prompt": "a red fox"}]},
        )
        store = RecordingStore()
        ctx = make_tool_context(
            FakeLLMRouter(), store=store, http_client=httpx_client, settings=_settings()
        )

        result = await GenerateImageTool().execute(GenerateImageInput(prompt="fox"), ctx)

        assert result == {"imageUrl": "https://img.example/1.png", "prompt": "a red fox"}
        assert store.chunks[-1] == {
            "type": "file",
            "url": "https://img.example/1.png",
            "mediaType": "image/png",
            "filename": "image.png",
        }
        sent = json.loads(route.calls.last.request.content)
        assert sent["prompt"] == "fox"
        assert sent["size"] == "1024x1024"

    @pytest.mark.asyncio
    @respx.mock
    async def test_provider_failure_is_tool_error(self, httpx_client):
        respx.post(OPENAI_IMAGES_URL).respond(500, json={"error": {"message": "down"}})
        ctx = make_tool_context(FakeLLMRouter(), http_client=httpx_client, settings=_settings())

        with pytest.raises(ToolError, match="Image generation failed"):
            await GenerateImageTool().execute(GenerateImageInput(prompt="fox"), ctx)

    @pytest.mark.asyncio
    async def test_not_configured(self, httpx_client):
        ctx = make_tool_context(
            FakeLLMRouter(), http_client=httpx_client, settings=_settings(openai_api_key=None)
        )

        with pytest.raises(ToolError, match="not configured"):
            await GenerateImageTool().execute(GenerateImageInput(prompt="fox"), ctx)


# =============================================================================
# Registry
# =============================================================================


class TestToolRegistry:
    def test_default_tools(self):
        assert build_default_registry().names == [
            "readDocument",
            "createDocument",
            "updateDocument",
            "webSearch",
            "deepResearch",
            "generateImage",
        ]

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError, match="already registered"):
            ToolRegistry([WebSearchTool(), WebSearchTool()])

    def test_specs_follow_requested_order_and_skip_unknown(self):
        registry = build_default_registry()

        specs = registry.specs(["webSearch", "nope", "readDocument"])

        assert [s.name for s in specs] == ["webSearch", "readDocument"]
        assert specs[0].parameters["properties"]["search_queries"]["type"] == "array"
