"""Tool definitions, results and the permission-checked registry.

Executors are synchronous and run on the registry's own thread pool so
blocking file or network work never stalls the event loop. Every failure
path (unknown tool, missing permission, incompatible context, executor
exception) comes back as a failed ``ToolResult`` rather than an exception.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
import logging
import re
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from switchboard.errors import ToolExecutionError, ValidationError
from switchboard.models import Message
from switchboard.request import ExecutionContext, Permission, ToolSpec
from switchboard.validation import ValidationResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from switchboard.models import ToolCall

logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,63}$")


class ToolCategory(str, Enum):
    FILE_SYSTEM = "file_system"
    WEB = "web"
    CODE_ANALYSIS = "code_analysis"
    PROJECT_MANAGEMENT = "project_management"
    UTILITY = "utility"


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    category: ToolCategory = ToolCategory.UTILITY
    required_permissions: frozenset[Permission] = frozenset()

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        if not _TOOL_NAME_RE.match(self.name or ""):
            result = result.with_error(f"Invalid tool name: {self.name!r}")
        if not self.description.strip():
            result = result.with_error(f"Tool {self.name} needs a description")
        if self.parameters.get("type") != "object":
            result = result.with_error(f"Tool {self.name} parameters must be an object schema")
        return result

    def to_spec(self) -> ToolSpec:
        return ToolSpec(self.name, self.description, self.parameters)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: str = ""
    success: bool = True
    error_message: str | None = None
    exception: BaseException | None = field(default=None, compare=False, repr=False)

    @classmethod
    def ok(cls, tool_call_id: str, content: str) -> ToolResult:
        return cls(tool_call_id, content)

    @classmethod
    def failure(
        cls, tool_call_id: str, message: str, exception: BaseException | None = None
    ) -> ToolResult:
        return cls(tool_call_id, "", success=False, error_message=message, exception=exception)

    def to_message(self) -> Message:
        """The tool turn to append to the conversation."""
        content = self.content if self.success else f"Error: {self.error_message}"
        return Message.tool(self.tool_call_id, content)


@runtime_checkable
class ToolExecutor(Protocol):
    @property
    def required_permissions(self) -> frozenset[Permission]: ...

    def is_compatible_with(self, context: ExecutionContext) -> bool: ...

    def execute(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        """Run the tool synchronously; may raise, the registry converts errors."""
        ...


def object_schema(
    properties: dict[str, tuple[str, str]], required: Iterable[str] = ()
) -> dict[str, Any]:
    """Build a JSON-schema object from ``{name: (type, description)}``."""
    return {
        "type": "object",
        "properties": {
            name: {"type": kind, "description": description}
            for name, (kind, description) in properties.items()
        },
        "required": list(required),
    }


class ToolRegistry:
    def __init__(self, max_workers: int = 4) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._executors: dict[str, ToolExecutor] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="switchboard-tool"
        )

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def register_tool(self, definition: ToolDefinition, executor: ToolExecutor) -> None:
        result = definition.validate()
        if not result.is_valid:
            raise ValidationError.from_result(result, what=f"Tool {definition.name!r}")
        if definition.name in self._definitions:
            raise ValidationError(
                f"Tool already registered: {definition.name}",
                errors=(f"Duplicate tool name: {definition.name}",),
            )
        self._definitions[definition.name] = definition
        self._executors[definition.name] = executor
        logger.debug("Registered tool %s", definition.name)

    def unregister_tool(self, name: str) -> bool:
        self._executors.pop(name, None)
        return self._definitions.pop(name, None) is not None

    def get_definition(self, name: str) -> ToolDefinition | None:
        return self._definitions.get(name)

    def _permissions_for(self, name: str) -> frozenset[Permission]:
        return self._definitions[name].required_permissions | frozenset(
            self._executors[name].required_permissions
        )

    def available_tools(self, context: ExecutionContext | None = None) -> list[ToolDefinition]:
        """Tools the context may call; every tool when no context is given."""
        if context is None:
            return list(self._definitions.values())
        return [
            d
            for name, d in self._definitions.items()
            if context.grants(self._permissions_for(name))
            and self._executors[name].is_compatible_with(context)
        ]

    def tools_by_category(self, category: ToolCategory) -> list[ToolDefinition]:
        return [d for d in self._definitions.values() if d.category is category]

    def tool_specs(self, context: ExecutionContext | None = None) -> list[ToolSpec]:
        return [d.to_spec() for d in self.available_tools(context)]

    def _prepare(self, call: ToolCall, context: ExecutionContext) -> ToolExecutor:
        definition = self._definitions.get(call.name)
        executor = self._executors.get(call.name)
        if definition is None or executor is None:
            raise ToolExecutionError(f"Tool not found: {call.name}", tool_name=call.name)
        if definition.name != call.name:
            raise ToolExecutionError(
                f"Tool name mismatch: {call.name} != {definition.name}", tool_name=call.name
            )
        missing = self._permissions_for(call.name) - context.permissions
        if missing:
            raise ToolExecutionError(
                f"Permission denied for {call.name}: requires "
                f"{', '.join(sorted(p.value for p in missing))}",
                tool_name=call.name,
            )
        if not executor.is_compatible_with(context):
            raise ToolExecutionError(
                f"Tool {call.name} cannot run in this context",
                hint="File tools need an existing project directory.",
                tool_name=call.name,
            )
        return executor

    async def execute_tool(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        try:
            executor = self._prepare(call, context)
        except ToolExecutionError as exc:
            logger.info("Tool call %s rejected: %s", call.id, exc)
            return ToolResult.failure(call.id, str(exc), exc)

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self._pool, executor.execute, call, context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s failed: %s", call.name, exc)
            return ToolResult.failure(call.id, f"{type(exc).__name__}: {exc}", exc)
        if result.tool_call_id != call.id:
            # Executors may not know the call id; results always answer their call.
            result = ToolResult(
                call.id, result.content, result.success, result.error_message, result.exception
            )
        return result

    async def execute_tool_calls(
        self, calls: Iterable[ToolCall], context: ExecutionContext
    ) -> list[ToolResult]:
        """Run *calls* in order; one failure does not stop the rest."""
        return [await self.execute_tool(call, context) for call in calls]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
