"""Tool descriptors and the per-turn tool context.

A tool is a name → descriptor entry: a description for the model, a
pydantic input model whose JSON schema is advertised and against which
every call is validated before dispatch, and an async execute method.

Tools never touch the HTTP response. They write data chunks through the
turn's StreamWriter and return a JSON-able result that becomes the tool
output part.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel

from chorus.config import Settings
from chorus.services.costs import CostAccumulator
from chorus.services.llm.router import LLMRouter
from chorus.services.llm.types import ToolSpec, Turn
from chorus.services.models import ModelDefinition
from chorus.services.stream_writer import StreamWriter

T = TypeVar("T")


class GenerationAborted(Exception):
    """The turn's abort signal was set while work was in progress."""


class ToolError(Exception):
    """A tool call failed; the message is reported to the model as the tool error."""


async def gather_or_cancel(*coros: Awaitable[T]) -> list[T]:
    """Run coroutines concurrently and return their results in order.

    If one raises, or the caller is cancelled, the others are cancelled and
    awaited before the exception propagates, so no sibling outlives the join.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass
class ToolContext:
    """Everything a tool call may use, scoped to one turn.

    Attributes:
        session_factory: Callable returning a new sync Session.
        user_id: Owner of created documents; None for anonymous callers,
            whose documents are streamed but never stored.
        conversation: Model turns the generation started from.
    """

    settings: Settings
    llm_router: LLMRouter
    http_client: httpx.AsyncClient
    writer: StreamWriter
    session_factory: Any
    model: ModelDefinition
    costs: CostAccumulator
    abort_event: asyncio.Event
    chat_id: UUID
    message_id: UUID
    user_id: UUID | None = None
    conversation: list[Turn] = field(default_factory=list)

    @property
    def chat_id_str(self) -> str:
        return str(self.chat_id)

    @property
    def message_id_str(self) -> str:
        return str(self.message_id)

    def check_abort(self) -> None:
        if self.abort_event.is_set():
            raise GenerationAborted()


class Tool(ABC):
    name: ClassVar[str]
    description: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.input_model.model_json_schema(),
        )

    @abstractmethod
    async def execute(self, args: BaseModel, ctx: ToolContext) -> Any:
        """Run the tool with validated arguments."""


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self, names: Iterable[str]) -> tuple[ToolSpec, ...]:
        """Specs of the registered tools among `names`, in the given order."""
        return tuple(self._tools[n].spec() for n in names if n in self._tools)


def build_default_registry() -> ToolRegistry:
    # Imported here; tool modules import ToolContext from this module
    from chorus.services.tools.deep_research import DeepResearchTool
    from chorus.services.tools.documents import (
        CreateDocumentTool,
        ReadDocumentTool,
        UpdateDocumentTool,
    )
    from chorus.services.tools.image import GenerateImageTool
    from chorus.services.tools.web_search import WebSearchTool

    return ToolRegistry(
        [
            ReadDocumentTool(),
            CreateDocumentTool(),
            UpdateDocumentTool(),
            WebSearchTool(),
            DeepResearchTool(),
            GenerateImageTool(),
        ]
    )
