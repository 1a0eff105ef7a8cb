"""Web search through Tavily.

Queries are fanned out concurrently. Each query writes a
data-researchUpdate part (status running → completed) that is replaced in
place by id, and every distinct result URL is written once as a source-url
part. A failing query yields no results and an error entry; it does not
fail the other queries or the tool call.
"""

from typing import Literal

import httpx
from pydantic import BaseModel, Field

from chorus.logging import get_logger
from chorus.services.redact import hash_text, safe_kv
from chorus.services.stream_writer import new_part_id
from chorus.services.tools.registry import Tool, ToolContext, gather_or_cancel

logger = get_logger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
SEARCH_TIMEOUT_S = 20.0
MAX_QUERIES = 6


class WebSearchError(Exception):
    pass


class SearchQuery(BaseModel):
    query: str
    rationale: str = Field(default="", description="Why this query helps")
    priority: int = Field(default=3, ge=1, le=5, description="Priority of the query, 2 to 4")


class WebSearchInput(BaseModel):
    search_queries: list[SearchQuery] = Field(min_length=1, max_length=MAX_QUERIES)
    topic: Literal["general", "news"] = "general"
    search_depth: Literal["basic", "advanced"] = "basic"


def max_results_for(priority: int) -> int:
    return max(1, min(6 - priority, 10))


async def search_tavily(
    client: httpx.AsyncClient,
    api_key: str | None,
    query: str,
    *,
    max_results: int = 5,
    topic: str = "general",
    search_depth: str = "basic",
) -> list[dict]:
    """One Tavily search; returns [{title, url, content}].

    Raises:
        WebSearchError: Missing key, transport failure, non-2xx or malformed response.
    """
    if not api_key:
        raise WebSearchError("Web search is not configured")

    body = {
        "query": query,
        "max_results": max_results,
        "topic": topic,
        "search_depth": search_depth,
        "include_answer": False,
    }
    if topic == "news":
        body["days"] = 7

    try:
        response = await client.post(
            TAVILY_SEARCH_URL,
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=SEARCH_TIMEOUT_S,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise WebSearchError(str(e)) from e

    try:
        raw_results = response.json().get("results", [])
    except (ValueError, AttributeError) as e:
        raise WebSearchError(f"Malformed search response: {e}") from e

    return [
        {
            "title": r.get("title") or "",
            "url": r["url"],
            "content": r.get("content") or "",
        }
        for r in raw_results
        if isinstance(r, dict) and r.get("url")
    ]


async def run_web_searches(
    ctx: ToolContext,
    queries: list[SearchQuery],
    *,
    topic: str = "general",
    search_depth: str = "basic",
) -> list[dict]:
    """Run all queries concurrently with progress and source parts.

    Returns:
        One {"query", "results"[, "error"]} entry per query, in query order,
        with results de-duplicated by URL across all queries.
    """
    writer = ctx.writer
    api_key = ctx.settings.tavily_api_key

    async def run_one(query: SearchQuery) -> dict:
        update_id = new_part_id()
        update = {"title": query.query, "type": "web", "status": "running"}
        await writer.write_data("researchUpdate", update, part_id=update_id)
        try:
            results = await search_tavily(
                ctx.http_client,
                api_key,
                query.query,
                max_results=max_results_for(query.priority),
                topic=topic,
                search_depth=search_depth,
            )
            entry: dict = {"query": query.query, "results": results}
        except WebSearchError as e:
            logger.warning(
                "web_search_failed",
                **safe_kv(query_sha256=hash_text(query.query), error=str(e)),
            )
            entry = {"query": query.query, "results": [], "error": str(e)}
        await writer.write_data(
            "researchUpdate",
            {**update, "status": "completed", "resultsCount": len(entry["results"])},
            part_id=update_id,
        )
        return entry

    ctx.check_abort()
    entries = await gather_or_cancel(*(run_one(q) for q in queries))
    ctx.check_abort()

    seen: set[str] = set()
    for entry in entries:
        unique = []
        for result in entry["results"]:
            if result["url"] in seen:
                continue
            seen.add(result["url"])
            unique.append(result)
            await writer.write(
                {
                    "type": "source-url",
                    "sourceId": new_part_id(),
                    "url": result["url"],
                    "title": result["title"],
                }
            )
        entry["results"] = unique

    logger.info(
        "web_search_completed",
        query_count=len(queries),
        result_count=len(seen),
    )
    return list(entries)


class WebSearchTool(Tool):
    name = "webSearch"
    description = (
        "Multi-query web search. Always cite sources inline right after the relevant "
        "sentence, formatted exactly as [Source Title](URL)."
    )
    input_model = WebSearchInput

    async def execute(self, args: WebSearchInput, ctx: ToolContext) -> dict:
        searches = await run_web_searches(
            ctx, args.search_queries, topic=args.topic, search_depth=args.search_depth
        )
        return {"searches": searches}
