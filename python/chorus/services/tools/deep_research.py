"""Deep research: plan sub-queries, search them, write a cited report.

The report is a text document streamed and stored like any createDocument
output. Progress is written as data-researchUpdate parts.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from chorus.logging import get_logger
from chorus.services.llm.prompt import (
    RESEARCH_PLAN_PROMPT,
    parse_lines,
    research_report_prompt,
    single_prompt,
)
from chorus.services.llm.types import LLMCallContext, LLMOperation, LLMRequest
from chorus.services.stream_writer import new_part_id
from chorus.services.tools.documents import create_document
from chorus.services.tools.registry import Tool, ToolContext
from chorus.services.tools.web_search import SearchQuery, run_web_searches

logger = get_logger(__name__)

MAX_RESEARCH_QUERIES = 5
PLAN_MAX_TOKENS = 512
FINDING_CHARS = 1500


class DeepResearchInput(BaseModel):
    topic: str = Field(description="The research request, stated completely")
    title: str = Field(description="Title of the final report")


async def plan_queries(ctx: ToolContext, topic: str) -> list[str]:
    """Ask the model for sub-queries; falls back to the topic itself."""
    request = LLMRequest(
        model_name=ctx.model.model_name,
        messages=single_prompt(
            RESEARCH_PLAN_PROMPT.format(max_queries=MAX_RESEARCH_QUERIES), topic
        ),
        max_tokens=PLAN_MAX_TOKENS,
    )
    response = await ctx.llm_router.generate(
        ctx.model.provider,
        request,
        call_context=LLMCallContext(
            operation=LLMOperation.RESEARCH,
            chat_id=ctx.chat_id_str,
            assistant_message_id=ctx.message_id_str,
        ),
    )
    ctx.costs.add_usage("research-plan", ctx.model, response.usage)
    return parse_lines(response.text, MAX_RESEARCH_QUERIES) or [topic]


def format_findings(searches: list[dict]) -> str:
    blocks = []
    for search in searches:
        for result in search["results"]:
            blocks.append(
                f"[{result['title']}]({result['url']})\n{result['content'][:FINDING_CHARS]}"
            )
    return "\n\n".join(blocks)


class DeepResearchTool(Tool):
    name = "deepResearch"
    description = (
        "Multi-step research: plans several web searches, runs them and writes a cited "
        "report document. Use only for requests that need broad, in-depth research."
    )
    input_model = DeepResearchInput

    async def execute(self, args: DeepResearchInput, ctx: ToolContext) -> dict:
        writer = ctx.writer

        plan_id = new_part_id()
        plan_update = {"title": "Planning research", "type": "thoughts", "status": "running"}
        await writer.write_data("researchUpdate", plan_update, part_id=plan_id)
        queries = await plan_queries(ctx, args.topic)
        await writer.write_data(
            "researchUpdate",
            {**plan_update, "status": "completed", "queries": queries},
            part_id=plan_id,
        )
        ctx.check_abort()

        searches = await run_web_searches(ctx, [SearchQuery(query=q) for q in queries])

        report_id = new_part_id()
        report_update = {"title": "Writing final report", "type": "writing", "status": "running"}
        await writer.write_data("researchUpdate", report_update, part_id=report_id)
        prompt = research_report_prompt(
            args.topic, format_findings(searches), datetime.now(UTC).date().isoformat()
        )
        document_id, _ = await create_document(ctx, title=args.title, kind="text", prompt=prompt)
        await writer.write_data(
            "researchUpdate", {**report_update, "status": "completed"}, part_id=report_id
        )

        logger.info(
            "deep_research_completed",
            query_count=len(queries),
            document_id=str(document_id),
        )
        return {
            "id": str(document_id),
            "title": args.title,
            "kind": "text",
            "content": "The research report has been created successfully.",
        }
