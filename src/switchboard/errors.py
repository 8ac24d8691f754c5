"""Exception hierarchy for Switchboard."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from switchboard.validation import ValidationResult


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(SwitchboardError):
    """Configuration could not be constructed or resolved."""


class ValidationError(SwitchboardError):
    """A request or configuration failed local checks.

    Raised before anything is sent over the wire. ``errors`` and ``warnings``
    mirror the ``ValidationResult`` the failure came from.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        errors: tuple[str, ...] = (),
        warnings: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message, hint=hint)
        self.errors = errors
        self.warnings = warnings

    @classmethod
    def from_result(cls, result: ValidationResult, *, what: str) -> ValidationError:
        """Build an error summarizing a failed validation result."""
        detail = "; ".join(result.errors)
        return cls(
            f"{what} validation failed: {detail}",
            errors=result.errors,
            warnings=result.warnings,
        )


class RequestBuildError(SwitchboardError):
    """A provider adapter could not construct the wire request."""


class ParseError(SwitchboardError):
    """A provider response did not match the expected shape."""


class ServiceError(SwitchboardError):
    """A provider call failed (non-2xx status or transport failure).

    Adapters attach retry metadata so the HTTP retry loop and the orchestrator
    can make decisions without substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(ServiceError):
    """Rate limit exceeded (HTTP 429 or local limiter queue full)."""


class ServiceTimeoutError(ServiceError):
    """The overall request deadline elapsed."""


class ServiceUnavailableError(ServiceError):
    """No provider can serve the request, or the service was shut down."""


class RequestCancelledError(ServiceError):
    """The caller cancelled the request before it finished."""


class ServiceCreationError(SwitchboardError):
    """A factory refused to build a service from its configuration."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        errors: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.errors = errors


class PipelineError(SwitchboardError):
    """An interceptor or processor rejected the request."""

    def __init__(
        self, message: str, *, hint: str | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable


class ToolExecutionError(SwitchboardError):
    """A tool call could not be executed."""

    def __init__(
        self, message: str, *, hint: str | None = None, tool_name: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_name = tool_name


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
