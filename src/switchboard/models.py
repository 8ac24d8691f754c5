"""Message vocabulary shared by every component.

All types are immutable; derived facts (``has_content`` and friends) are
computed, never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import json
import time
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class Attachment:
    """Binary or remote content attached to a message (images, documents)."""

    type: str
    url: str | None = None
    data: bytes | None = None
    mime_type: str | None = None
    filename: str | None = None


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the raw JSON text the provider returned; ``result`` is
    filled in once the call has been executed.
    """

    id: str
    name: str
    arguments: str = "{}"
    result: str | None = None

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments`` into a dict; blank arguments decode to ``{}``."""
        if not self.arguments or not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(value).__name__}")
        return value

    def with_result(self, result: str) -> ToolCall:
        return replace(self, result=result)


@dataclass(frozen=True)
class Citation:
    start_index: int
    end_index: int
    url: str
    license: str | None = None


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ThinkingContent:
    """Model reasoning text surfaced alongside the answer."""

    content: str
    visible: bool = True


@dataclass(frozen=True)
class WebSource:
    """A web page a search-capable provider consulted."""

    url: str
    title: str
    snippet: str = ""
    favicon: str | None = None


@dataclass(frozen=True)
class Message:
    """A single conversational turn.

    For ``Role.TOOL`` messages, ``name`` carries the id of the tool call the
    content answers.
    """

    role: Role
    content: str = ""
    attachments: tuple[Attachment, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    timestamp: float = field(default_factory=time.time)
    name: str | None = None

    @classmethod
    def user(cls, content: str, *attachments: Attachment) -> Message:
        return cls(Role.USER, content, attachments=tuple(attachments))

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> Message:
        return cls(Role.ASSISTANT, content, tool_calls=tuple(tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(Role.TOOL, content, name=tool_call_id)

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_empty(self) -> bool:
        return not (self.has_content or self.has_attachments or self.has_tool_calls)

    def estimated_tokens(self) -> int:
        """Rough token estimate: four characters per token plus fixed overheads."""
        tokens = len(self.content) // 4 + 10
        tokens += 100 * len(self.attachments)
        for call in self.tool_calls:
            tokens += 50 + len(call.arguments) // 4
            if call.result:
                tokens += len(call.result) // 4
        return max(1, tokens)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (attachment bytes are omitted)."""
        out: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.name:
            out["name"] = self.name
        if self.attachments:
            out["attachments"] = [
                {
                    "type": a.type,
                    "url": a.url,
                    "mime_type": a.mime_type,
                    "filename": a.filename,
                }
                for a in self.attachments
            ]
        if self.tool_calls:
            out["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments}
                for c in self.tool_calls
            ]
        return out
