"""Tool admission.

Decides which tools a turn may offer the model, before any model call:

1. affordability: keep tools whose fixed cost fits the available budget
2. capability: a model without input modalities gets no tools; a reasoning
   model does not get deepResearch
3. explicit override: when the caller asked for specific tools, offer
   exactly the requested tools that survived 1 and 2; if none did, the
   turn is refused with InsufficientBudgetError naming the first one

Costs are admission-time estimates only; the debit at the end of a turn
counts the tool calls that actually produced output.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from chorus.errors import InsufficientBudgetError, InvalidRequestError
from chorus.logging import get_logger
from chorus.services.models import ModelDefinition

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolCatalogEntry:
    name: str
    cost: int
    description: str
    anonymous: bool = False


TOOL_CATALOG: dict[str, ToolCatalogEntry] = {
    e.name: e
    for e in (
        ToolCatalogEntry("readDocument", 1, "Read the latest version of a document", True),
        ToolCatalogEntry("createDocument", 5, "Create a text, code or sheet document", True),
        ToolCatalogEntry("updateDocument", 5, "Rewrite an existing document", True),
        ToolCatalogEntry("webSearch", 3, "Search the web", True),
        ToolCatalogEntry("generateImage", 5, "Generate an image from a prompt"),
        ToolCatalogEntry("deepResearch", 20, "Multi-step web research with a report"),
    )
}

DEEP_RESEARCH = "deepResearch"

# UI-level tool choice → tools it enables
SELECTED_TOOL_MAP: dict[str, list[str]] = {
    "deepResearch": ["deepResearch"],
    "webSearch": ["webSearch"],
    "generateImage": ["generateImage"],
    "createDocument": ["createDocument", "updateDocument"],
}


def anonymous_catalog() -> dict[str, ToolCatalogEntry]:
    return {name: entry for name, entry in TOOL_CATALOG.items() if entry.anonymous}


def expand_selected_tool(selected_tool: str | None) -> list[str] | None:
    """Requested tool names for a UI tool choice; None when nothing was chosen.

    Raises:
        InvalidRequestError: Unknown tool choice.
    """
    if not selected_tool:
        return None
    tools = SELECTED_TOOL_MAP.get(selected_tool)
    if tools is None:
        raise InvalidRequestError(message=f"Unknown tool: {selected_tool}")
    return list(tools)


def tool_cost(name: str) -> int:
    entry = TOOL_CATALOG.get(name)
    return entry.cost if entry else 0


def select_active_tools(
    catalog: dict[str, ToolCatalogEntry],
    available_budget: int,
    requested: Sequence[str] | None,
    model: ModelDefinition,
) -> list[str]:
    """Tool names offered to the model for one turn.

    Raises:
        InsufficientBudgetError: Tools were requested and none of them
            survived affordability and capability filtering.
    """
    active = [name for name, entry in catalog.items() if entry.cost <= available_budget]

    if not model.supports_tools:
        active = []
    elif model.reasoning:
        active = [name for name in active if name != DEEP_RESEARCH]

    if requested:
        surviving = [name for name in requested if name in active]
        if not surviving:
            logger.warning(
                "tool_gate_refused",
                requested_tools=list(requested),
                available_budget=available_budget,
                model_id=model.id,
            )
            raise InsufficientBudgetError(
                f"Insufficient budget for requested tool: {requested[0]}",
                tool=requested[0],
            )
        active = surviving

    logger.debug(
        "tool_gate_selected",
        active_tools=active,
        available_budget=available_budget,
        model_id=model.id,
    )
    return active


def invocation_cost(tool_names: Iterable[str]) -> int:
    """Fixed cost of the given tool invocations (one entry per invocation)."""
    return sum(tool_cost(name) for name in tool_names)
