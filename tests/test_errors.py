from __future__ import annotations

import asyncio

import httpx
import pytest

from switchboard.errors import (
    ConfigurationError,
    ParseError,
    PipelineError,
    RateLimitError,
    RequestCancelledError,
    ServiceError,
    ServiceTimeoutError,
    ServiceUnavailableError,
    SwitchboardError,
    ValidationError,
)
from switchboard.providers._errors import (
    error_for_status,
    extract_retry_after_s,
    extract_status_code,
    wrap_http_error,
)
from switchboard.response import AIError
from switchboard.validation import ValidationResult

pytestmark = pytest.mark.unit


def test_service_error_structured_metadata() -> None:
    err = ServiceError(
        "boom",
        hint="do this",
        retryable=True,
        status_code=503,
        retry_after_s=2.0,
        provider="gemini",
        phase="execute",
    )

    assert str(err) == "boom"
    assert err.hint == "do this"
    assert err.retryable is True
    assert err.status_code == 503
    assert err.retry_after_s == 2.0
    assert err.provider == "gemini"
    assert err.phase == "execute"


def test_service_error_defaults_to_none() -> None:
    err = ServiceError("fail")
    assert err.hint is None
    assert err.retryable is None
    assert err.status_code is None
    assert err.retry_after_s is None
    assert err.provider is None
    assert err.phase is None


def test_subclass_hierarchy() -> None:
    """Specific service failures stay catchable as ServiceError and SwitchboardError."""
    for cls in (RateLimitError, ServiceTimeoutError, ServiceUnavailableError):
        err = cls("x")
        assert isinstance(err, ServiceError)
        assert isinstance(err, SwitchboardError)
    assert isinstance(ValidationError("x"), SwitchboardError)
    assert isinstance(ConfigurationError("x"), SwitchboardError)


def test_validation_error_from_result_lists_every_error() -> None:
    result = ValidationResult(errors=("a is bad", "b is bad"), warnings=("c is odd",))

    err = ValidationError.from_result(result, what="Request")

    assert str(err) == "Request validation failed: a is bad; b is bad"
    assert err.errors == ("a is bad", "b is bad")
    assert err.warnings == ("c is odd",)


# =============================================================================
# AIError mapping
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "code", "retryable"),
    [
        (ValidationError("bad"), "VALIDATION_ERROR", False),
        (ParseError("bad"), "PARSE_ERROR", False),
        (ServiceTimeoutError("slow", retryable=True), "TIMEOUT", False),
        (RequestCancelledError("stop"), "CANCELLED", False),
        (asyncio.CancelledError(), "CANCELLED", False),
        (RateLimitError("429"), "RATE_LIMITED", True),
        (ServiceError("500", retryable=True), "SERVICE_ERROR", True),
        (ServiceError("400", retryable=False), "SERVICE_ERROR", False),
        (PipelineError("nope"), "SWITCHBOARD_ERROR", False),
        (RuntimeError("what"), "UNKNOWN_ERROR", False),
    ],
)
def test_ai_error_codes(exc: BaseException, code: str, retryable: bool) -> None:
    err = AIError.from_exception(exc)
    assert err.code == code
    assert err.retryable is retryable
    assert err.cause is exc


def test_ai_error_message_falls_back_to_type_name() -> None:
    assert AIError.from_exception(RuntimeError()).message == "RuntimeError"


# =============================================================================
# HTTP error mapping
# =============================================================================


def _response(status: int, body: str = "", headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status, text=body, headers=headers or {})


def test_error_for_status_reads_google_style_body() -> None:
    body = (
        '{"error": {"message": "Quota exceeded", "details": ['
        '{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "8s"}]}}'
    )

    err = error_for_status(
        _response(429, body), provider="gemini", phase="execute", body_text=body
    )

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retryable is True
    assert err.retry_after_s == 8.0
    assert "Quota exceeded" in str(err)


def test_error_for_status_prefers_retry_after_header() -> None:
    err = error_for_status(
        _response(503, headers={"Retry-After": "3"}),
        provider="openai",
        phase="execute",
    )
    assert err.retry_after_s == 3.0
    assert err.retryable is True


def test_error_for_status_auth_hint_names_env_var() -> None:
    err = error_for_status(
        _response(401, "nope"), provider="openai", phase="execute", body_text="nope"
    )
    assert err.retryable is False
    assert err.hint is not None
    assert "OPENAI_API_KEY" in err.hint


def test_error_for_status_cookie_provider_hint() -> None:
    err = error_for_status(_response(403), provider="gemini-cookie", phase="warmup")
    assert err.hint is not None
    assert "cookies" in err.hint


def test_wrap_http_error_marks_transport_failures_retryable() -> None:
    exc = httpx.ConnectError("connection refused")

    err = wrap_http_error(exc, provider="qwen", phase="execute")

    assert err.retryable is True
    assert err.status_code is None
    assert err.provider == "qwen"
    assert "connection refused" in str(err)


def test_wrap_http_error_fills_missing_context_on_existing_error() -> None:
    original = ServiceError("boom", status_code=500)

    err = wrap_http_error(original, provider="qwen", phase="stream")

    assert err is original
    assert err.provider == "qwen"
    assert err.phase == "stream"


def test_extractors_walk_exception_chain() -> None:
    request = httpx.Request("GET", "https://example.test")
    response = httpx.Response(429, headers={"Retry-After": "5"}, request=request)
    inner = httpx.HTTPStatusError("limited", request=request, response=response)
    outer = RuntimeError("wrapped")
    outer.__cause__ = inner

    assert extract_status_code(outer) == 429
    assert extract_retry_after_s(outer) == 5.0
