"""Generation engine: streaming model calls with tool round trips.

One run drives up to max_steps model calls. Each call streams text and
reasoning deltas to the turn stream as start/delta/end blocks. Tool calls
requested in a step are validated against the tool's input model and
executed concurrently; an aborted call cancels its siblings. Results are
appended to the conversation before the next call. The last allowed step is
made without tools so the model has to answer in text.

Chunks written per tool call:
    tool-input-start, tool-input-available,
    then tool-output-available or tool-output-error

The abort event is checked between every provider chunk and inside every
tool; when set, the run raises GenerationAborted and whatever was written
so far stays in the message builder.
"""

import json
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from chorus.logging import get_logger
from chorus.services.llm.types import (
    ContentPart,
    LLMCallContext,
    LLMOperation,
    LLMRequest,
    LLMToolCall,
    TextContent,
    ToolCallContent,
    ToolResultContent,
    Turn,
)
from chorus.services.models import output_tokens_for
from chorus.services.stream_writer import new_part_id
from chorus.services.tools.registry import (
    GenerationAborted,
    ToolContext,
    ToolRegistry,
    gather_or_cancel,
)

logger = get_logger(__name__)

DEFAULT_MAX_STEPS = 5


class GenerationState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"


@dataclass
class GenerationResult:
    steps: int = 0
    finish_reason: str | None = None
    tool_calls: list[str] = field(default_factory=list)
    failed_tool_calls: list[str] = field(default_factory=list)


class _Block:
    """An open text or reasoning block of the current step."""

    def __init__(self, kind: str):
        self.kind = kind
        self.id = new_part_id()


class GenerationEngine:
    def __init__(self, registry: ToolRegistry, max_steps: int = DEFAULT_MAX_STEPS):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.registry = registry
        self.max_steps = max_steps
        self.state = GenerationState.PENDING

    async def run(
        self,
        ctx: ToolContext,
        *,
        system: str,
        messages: list[Turn],
        active_tools: list[str],
    ) -> GenerationResult:
        """Generate the assistant reply for one turn.

        Raises:
            GenerationAborted: The abort event was set.
            LLMError: A provider call failed.
        """
        self.state = GenerationState.STREAMING
        ctx.conversation = list(messages)
        conversation = [Turn(role="system", content=system), *messages]
        result = GenerationResult()

        try:
            for step in range(self.max_steps):
                last_step = step == self.max_steps - 1
                tool_names = [] if last_step else active_tools
                text, calls, finish_reason = await self._stream_step(
                    ctx, conversation, tool_names
                )
                result.steps = step + 1
                result.finish_reason = finish_reason
                if not calls:
                    break

                outcomes = await gather_or_cancel(
                    *(self._run_tool(ctx, call, tool_names) for call in calls)
                )
                assistant_content: list[ContentPart] = []
                if text:
                    assistant_content.append(TextContent(text=text))
                for call in calls:
                    assistant_content.append(
                        ToolCallContent(
                            tool_call_id=call.id, tool_name=call.name, input=call.arguments
                        )
                    )
                conversation.append(Turn(role="assistant", content=tuple(assistant_content)))
                conversation.append(Turn(role="tool", content=tuple(outcomes)))
                for outcome in outcomes:
                    if outcome.is_error:
                        result.failed_tool_calls.append(outcome.tool_name)
                    else:
                        result.tool_calls.append(outcome.tool_name)
        except GenerationAborted:
            self.state = GenerationState.ABORTED
            raise
        except BaseException:
            self.state = GenerationState.ERRORED
            raise

        self.state = GenerationState.COMPLETED
        return result

    async def _stream_step(
        self, ctx: ToolContext, conversation: list[Turn], tool_names: list[str]
    ) -> tuple[str, list[LLMToolCall], str | None]:
        model = ctx.model
        request = LLMRequest(
            model_name=model.model_name,
            messages=list(conversation),
            max_tokens=output_tokens_for(model),
            tools=self.registry.specs(tool_names),
            reasoning=model.reasoning,
        )
        call_context = LLMCallContext(
            operation=LLMOperation.CHAT_TURN,
            chat_id=ctx.chat_id_str,
            assistant_message_id=ctx.message_id_str,
        )

        writer = ctx.writer
        block: _Block | None = None
        text = ""
        calls: list[LLMToolCall] = []
        finish_reason = None

        async def open_block(kind: str) -> _Block:
            nonlocal block
            if block is not None and block.kind == kind:
                return block
            await close_block()
            block = _Block(kind)
            await writer.write({"type": f"{kind}-start", "id": block.id})
            return block

        async def close_block() -> None:
            nonlocal block
            if block is not None:
                await writer.write({"type": f"{block.kind}-end", "id": block.id})
                block = None

        stream = ctx.llm_router.generate_stream(
            model.provider, request, call_context=call_context
        )
        async with aclosing(stream):
            async for chunk in stream:
                ctx.check_abort()
                if chunk.delta_reasoning:
                    current = await open_block("reasoning")
                    await writer.write(
                        {
                            "type": "reasoning-delta",
                            "id": current.id,
                            "delta": chunk.delta_reasoning,
                        }
                    )
                if chunk.delta_text:
                    current = await open_block("text")
                    text += chunk.delta_text
                    await writer.write(
                        {"type": "text-delta", "id": current.id, "delta": chunk.delta_text}
                    )
                if chunk.tool_call is not None:
                    await close_block()
                    call = chunk.tool_call
                    calls.append(call)
                    await writer.write(
                        {"type": "tool-input-start", "toolCallId": call.id, "toolName": call.name}
                    )
                    await writer.write(
                        {
                            "type": "tool-input-available",
                            "toolCallId": call.id,
                            "toolName": call.name,
                            "input": call.arguments,
                        }
                    )
                if chunk.done:
                    finish_reason = chunk.finish_reason
                    ctx.costs.add_usage("chat", model, chunk.usage)
        await close_block()
        return text, calls, finish_reason

    async def _run_tool(
        self, ctx: ToolContext, call: LLMToolCall, allowed: list[str]
    ) -> ToolResultContent:
        """Validate and execute one tool call, writing its output chunk."""
        tool = self.registry.get(call.name) if call.name in allowed else None
        if tool is None:
            return await self._tool_error(ctx, call, f"Unknown tool: {call.name}")

        try:
            args = tool.input_model.model_validate(call.arguments)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            return await self._tool_error(ctx, call, f"Invalid input for {call.name}: {fields}")

        start = time.monotonic()
        try:
            ctx.check_abort()
            output = await tool.execute(args, ctx)
        except GenerationAborted:
            raise
        except Exception as e:
            logger.warning(
                "tool_call_failed",
                tool_name=call.name,
                tool_call_id=call.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return await self._tool_error(ctx, call, str(e) or type(e).__name__)

        await ctx.writer.write(
            {
                "type": "tool-output-available",
                "toolCallId": call.id,
                "toolName": call.name,
                "output": output,
            }
        )
        logger.info(
            "tool_call_finished",
            tool_name=call.name,
            tool_call_id=call.id,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return ToolResultContent(
            tool_call_id=call.id, tool_name=call.name, output=_output_text(output)
        )

    async def _tool_error(
        self, ctx: ToolContext, call: LLMToolCall, error_text: str
    ) -> ToolResultContent:
        await ctx.writer.write(
            {
                "type": "tool-output-error",
                "toolCallId": call.id,
                "toolName": call.name,
                "errorText": error_text,
            }
        )
        return ToolResultContent(
            tool_call_id=call.id, tool_name=call.name, output=error_text, is_error=True
        )


def _output_text(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output)
