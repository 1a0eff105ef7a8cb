"""Follow-up suggestions written after the main reply.

Best-effort and bounded: any failure or timeout is logged and the turn
carries on without suggestions.
"""

import asyncio

from chorus.logging import get_logger
from chorus.services.llm.prompt import FOLLOWUP_PROMPT, parse_lines
from chorus.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, Turn
from chorus.services.models import UTILITY_MODEL_ID, get_model
from chorus.services.tools.registry import ToolContext

logger = get_logger(__name__)

MAX_SUGGESTIONS = 5
FOLLOWUP_MAX_TOKENS = 256
TRANSCRIPT_CHARS = 6000


def _transcript(turns: list[Turn], reply: str) -> str:
    lines = [f"{t.role}: {t.text}" for t in turns if t.role in ("user", "assistant") and t.text]
    if reply:
        lines.append(f"assistant: {reply}")
    return "\n".join(lines)[-TRANSCRIPT_CHARS:]


async def suggest_followups(ctx: ToolContext, reply: str) -> list[str]:
    """Ask the utility model (or the turn's model) for suggestions."""
    model = get_model(UTILITY_MODEL_ID)
    if not ctx.llm_router.is_provider_available(model.provider):
        model = ctx.model

    request = LLMRequest(
        model_name=model.model_name,
        messages=[
            Turn(role="system", content=FOLLOWUP_PROMPT.format(max_suggestions=MAX_SUGGESTIONS)),
            Turn(role="user", content=_transcript(ctx.conversation, reply)),
        ],
        max_tokens=FOLLOWUP_MAX_TOKENS,
        temperature=0.7,
    )
    response = await ctx.llm_router.generate(
        model.provider,
        request,
        call_context=LLMCallContext(
            operation=LLMOperation.FOLLOWUPS,
            chat_id=ctx.chat_id_str,
            assistant_message_id=ctx.message_id_str,
        ),
    )
    ctx.costs.add_usage("followups", model, response.usage)
    return parse_lines(response.text, MAX_SUGGESTIONS)


async def write_followups(ctx: ToolContext, reply: str, timeout_s: float) -> None:
    """Write a data-followupSuggestions part; never raises for model failures."""
    try:
        suggestions = await asyncio.wait_for(suggest_followups(ctx, reply), timeout_s)
    except TimeoutError:
        logger.warning("followups_timed_out", timeout_s=timeout_s)
        return
    except Exception as e:
        logger.warning("followups_failed", error_type=type(e).__name__, error=str(e))
        return

    if suggestions:
        await ctx.writer.write_data("followupSuggestions", {"suggestions": suggestions})
