"""Web search tool: returns a search URL, it never fetches anything."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import quote_plus

from switchboard.errors import ToolExecutionError
from switchboard.request import Permission
from switchboard.tools.registry import ToolCategory, ToolDefinition, ToolResult, object_schema

if TYPE_CHECKING:
    from switchboard.models import ToolCall
    from switchboard.request import ExecutionContext

SEARCH_ENGINES: dict[str, str] = {
    "google": "https://www.google.com/search?q={}",
    "bing": "https://www.bing.com/search?q={}",
    "duckduckgo": "https://duckduckgo.com/?q={}",
}


def search_url(query: str, engine: str | None = None) -> str:
    """Unknown or missing engines fall back to Google."""
    template = SEARCH_ENGINES.get((engine or "").lower(), SEARCH_ENGINES["google"])
    return template.format(quote_plus(query))


class WebSearch:
    @property
    def required_permissions(self) -> frozenset[Permission]:
        return frozenset({Permission.NETWORK_ACCESS})

    def is_compatible_with(self, context: ExecutionContext) -> bool:
        return True

    def execute(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        args = call.parsed_arguments()
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ToolExecutionError("Missing required argument: query", tool_name=call.name)
        return ToolResult.ok(call.id, search_url(query, args.get("engine")))


WEB_SEARCH = ToolDefinition(
    "webSearch",
    "Build a web search URL for a query.",
    object_schema(
        {
            "query": ("string", "What to search for"),
            "engine": ("string", "google, bing or duckduckgo"),
        },
        required=("query",),
    ),
    ToolCategory.WEB,
    frozenset({Permission.NETWORK_ACCESS}),
)
