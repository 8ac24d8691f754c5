"""Tool calling: definitions, the execution registry and built-in tools."""

from __future__ import annotations

from switchboard.tools.files import FILE_TOOLS, resolve_in_project
from switchboard.tools.registry import (
    ToolCategory,
    ToolDefinition,
    ToolExecutor,
    ToolRegistry,
    ToolResult,
    object_schema,
)
from switchboard.tools.web import WEB_SEARCH, WebSearch, search_url


def register_default_tools(registry: ToolRegistry) -> ToolRegistry:
    """Register the file tools and ``webSearch`` on *registry*."""
    for definition, executor in FILE_TOOLS:
        registry.register_tool(definition, executor)
    registry.register_tool(WEB_SEARCH, WebSearch())
    return registry


__all__ = [
    "ToolCategory",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "object_schema",
    "register_default_tools",
    "resolve_in_project",
    "search_url",
]
