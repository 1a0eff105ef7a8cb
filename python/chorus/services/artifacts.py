"""Artifact (document) generation and stream reduction.

A document is produced by a nested model stream. Each provider delta is
turned into a kind-specific data chunk on the turn stream and folded into
the document content with that kind's reducer:

    text, code : append    (acc + delta)
    sheet      : replace   (each delta is a complete CSV snapshot)

Consumers delimit one accumulation with data-clear / data-finish, which the
document tools write around the generation.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from chorus.services.llm.prompt import DOCUMENT_PROMPTS, single_prompt, update_document_prompt
from chorus.services.llm.types import LLMCallContext, LLMOperation, LLMRequest
from chorus.services.models import output_tokens_for

Reducer = Callable[[str, str], str]


def append_reducer(acc: str, delta: str) -> str:
    return acc + delta


def replace_reducer(acc: str, delta: str) -> str:
    return delta


REDUCERS: dict[str, Reducer] = {
    "text": append_reducer,
    "code": append_reducer,
    "sheet": replace_reducer,
}


def reduce_deltas(kind: str, deltas: list[str]) -> str:
    """Fold a sequence of deltas for `kind`, starting from the empty string."""
    reducer = REDUCERS[kind]
    acc = ""
    for delta in deltas:
        acc = reducer(acc, delta)
    return acc


@dataclass(frozen=True)
class ArtifactHandler:
    """How one document kind is generated and streamed.

    Attributes:
        kind: Document kind.
        delta_event: Data chunk name carrying deltas (data-<delta_event>).
        snapshots: Whether deltas are complete snapshots rather than increments.
    """

    kind: str
    delta_event: str
    snapshots: bool = False

    async def generate(self, ctx, prompt: str) -> str:
        return await self._stream(ctx, DOCUMENT_PROMPTS[self.kind], prompt)

    async def update(self, ctx, current_content: str | None, description: str) -> str:
        return await self._stream(
            ctx, update_document_prompt(current_content, self.kind), description
        )

    async def _stream(self, ctx, system: str, prompt: str) -> str:
        """Run the nested model stream, writing deltas to the turn stream.

        Args:
            ctx: ToolContext of the calling tool.
        """
        model = ctx.model
        request = LLMRequest(
            model_name=model.model_name,
            messages=single_prompt(system, prompt),
            max_tokens=output_tokens_for(model),
        )
        call_context = LLMCallContext(
            operation=LLMOperation.DOCUMENT,
            chat_id=ctx.chat_id_str,
            assistant_message_id=ctx.message_id_str,
            extra={"kind": self.kind},
        )

        reducer = REDUCERS[self.kind]
        acc = ""
        raw = ""
        async for chunk in ctx.llm_router.generate_stream(
            model.provider, request, call_context=call_context
        ):
            ctx.check_abort()
            if chunk.delta_text:
                raw += chunk.delta_text
                delta = raw if self.snapshots else chunk.delta_text
                acc = reducer(acc, delta)
                await ctx.writer.write_data(self.delta_event, delta, transient=True)
            if chunk.done:
                ctx.costs.add_usage(f"document-{self.kind}", model, chunk.usage)
            # Let other tool calls of the same step make progress
            await asyncio.sleep(0)
        return acc


ARTIFACT_HANDLERS: dict[str, ArtifactHandler] = {
    "text": ArtifactHandler(kind="text", delta_event="textDelta"),
    "code": ArtifactHandler(kind="code", delta_event="codeDelta"),
    "sheet": ArtifactHandler(kind="sheet", delta_event="sheetDelta", snapshots=True),
}
