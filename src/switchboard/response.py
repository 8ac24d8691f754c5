"""Response model: AIResponse, its merge law, and error payloads."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
import time
from typing import Any
import uuid

from switchboard.errors import (
    ParseError,
    RateLimitError,
    RequestBuildError,
    RequestCancelledError,
    ServiceError,
    ServiceTimeoutError,
    SwitchboardError,
    ValidationError,
)
from switchboard.models import Citation, ThinkingContent, TokenUsage, ToolCall, WebSource


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class AIError:
    """Error payload carried by a terminal AIResponse."""

    code: str
    message: str
    retryable: bool = False
    cause: BaseException | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_exception(cls, exc: BaseException) -> AIError:
        """Map an exception to a stable error code."""
        code = "UNKNOWN_ERROR"
        retryable = False
        # Order matters: subclasses before their bases.
        if isinstance(exc, ValidationError):
            code = "VALIDATION_ERROR"
        elif isinstance(exc, RequestBuildError):
            code = "REQUEST_BUILD_ERROR"
        elif isinstance(exc, ParseError):
            code = "PARSE_ERROR"
        elif isinstance(exc, (RequestCancelledError, asyncio.CancelledError)):
            code = "CANCELLED"
        elif isinstance(exc, ServiceTimeoutError):
            code = "TIMEOUT"
        elif isinstance(exc, RateLimitError):
            code = "RATE_LIMITED"
            retryable = True
        elif isinstance(exc, ServiceError):
            code = "SERVICE_ERROR"
            retryable = exc.retryable is not False
        elif isinstance(exc, SwitchboardError):
            code = "SWITCHBOARD_ERROR"
        message = str(exc) or type(exc).__name__
        return cls(code, message, retryable=retryable, cause=exc)


@dataclass(frozen=True)
class ResponseMetadata:
    model: str | None = None
    processing_time_ms: int | None = None
    provider: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def _new_response_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AIResponse:
    """A complete or partial model response.

    Streaming chunks are folded with ``merge``: content concatenates, every
    other field takes the newer value when present.
    """

    request_id: str
    content: str = ""
    model: str | None = None
    usage: TokenUsage | None = None
    metadata: ResponseMetadata | None = None
    finish_reason: FinishReason | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    citations: tuple[Citation, ...] = ()
    web_sources: tuple[WebSource, ...] = ()
    thinking: ThinkingContent | None = None
    is_streaming: bool = False
    is_complete: bool = True
    error: AIError | None = None
    id: str = field(default_factory=_new_response_id)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def chunk(cls, request_id: str, content: str = "", **kwargs: Any) -> AIResponse:
        """A partial streaming response."""
        return cls(
            request_id=request_id,
            content=content,
            is_streaming=True,
            is_complete=False,
            **kwargs,
        )

    @classmethod
    def failure(cls, request_id: str, error: AIError) -> AIResponse:
        """A complete response carrying *error*."""
        return cls(
            request_id=request_id,
            finish_reason=FinishReason.ERROR,
            error=error,
            is_complete=True,
        )

    def merge(self, other: AIResponse) -> AIResponse:
        """Fold *other* (a later chunk) into this response."""
        thinking = other.thinking or self.thinking
        if self.thinking is not None and other.thinking is not None:
            thinking = ThinkingContent(
                self.thinking.content + other.thinking.content,
                visible=other.thinking.visible,
            )
        return replace(
            self,
            content=self.content + other.content,
            model=self.model or other.model,
            usage=other.usage or self.usage,
            metadata=other.metadata or self.metadata,
            finish_reason=other.finish_reason or self.finish_reason,
            tool_calls=other.tool_calls or self.tool_calls,
            citations=other.citations or self.citations,
            web_sources=other.web_sources or self.web_sources,
            thinking=thinking,
            error=other.error or self.error,
            is_streaming=other.is_streaming,
            is_complete=other.is_complete,
        )

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def has_citations(self) -> bool:
        return bool(self.citations)

    @property
    def has_thinking(self) -> bool:
        return self.thinking is not None and bool(self.thinking.content)

    @property
    def is_successful(self) -> bool:
        return not self.has_error and self.finish_reason not in (
            FinishReason.ERROR,
            FinishReason.CANCELLED,
            FinishReason.TIMEOUT,
        )

    @property
    def needs_follow_up(self) -> bool:
        """True when the model asked for tool results before it can answer."""
        return self.has_tool_calls and not self.has_error
