"""Callable tools offered to the model during a chat turn."""

from chorus.services.tools.gate import (
    SELECTED_TOOL_MAP,
    TOOL_CATALOG,
    ToolCatalogEntry,
    anonymous_catalog,
    expand_selected_tool,
    select_active_tools,
)
from chorus.services.tools.registry import (
    GenerationAborted,
    Tool,
    ToolContext,
    ToolError,
    ToolRegistry,
    build_default_registry,
)

__all__ = [
    "GenerationAborted",
    "SELECTED_TOOL_MAP",
    "TOOL_CATALOG",
    "Tool",
    "ToolCatalogEntry",
    "ToolContext",
    "ToolError",
    "ToolRegistry",
    "anonymous_catalog",
    "build_default_registry",
    "expand_selected_tool",
    "select_active_tools",
]
