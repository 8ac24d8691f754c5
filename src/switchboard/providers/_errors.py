"""Shared provider-side error helpers.

Adapters attach retry metadata via ServiceError so the retry loop and the
orchestrator stay deterministic without brittle substring matching.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

import httpx

from switchboard._http import RATE_LIMIT_STATUS, is_retryable_status
from switchboard.config import api_key_env_var
from switchboard.errors import RateLimitError, ServiceError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Mapping

_DURATION_RE = re.compile(r"\d+(?:\.\d+)?s")


def _status_of(e: BaseException) -> int | None:
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code
    for candidate in (
        getattr(e, "status_code", None),
        getattr(e, "status", None),
        getattr(getattr(e, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int) and 100 <= candidate <= 599:
            return candidate
    return None


def extract_status_code(exc: BaseException) -> int | None:
    """First HTTP status found along the exception chain."""
    return next(
        (code for e in _walk_exception_chain(exc) if (code := _status_of(e)) is not None),
        None,
    )


def _retry_after_header(headers: Mapping[str, str] | None) -> float | None:
    raw = (headers or {}).get("Retry-After", "")
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _retry_info_seconds(body: Any) -> float | None:
    """Delay from a Google ``RetryInfo`` error detail (``"retryDelay": "8s"``)."""
    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    for entry in details if isinstance(details, list) else ():
        if not isinstance(entry, dict) or not str(entry.get("@type", "")).endswith("RetryInfo"):
            continue
        delay = entry.get("retryDelay")
        if isinstance(delay, str) and _DURATION_RE.fullmatch(delay):
            return float(delay[:-1])
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after_s", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        response = getattr(e, "response", None)
        seconds = _retry_after_header(getattr(response, "headers", None))
        if seconds is not None:
            return seconds
    return None


def _error_message_from_body(body: Any) -> str | None:
    """Pull the human message out of common error body shapes."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    for key in ("message", "detail", "msg"):
        if isinstance(body.get(key), str):
            return body[key]
    return None


def _auth_hint(provider: str, status_code: int | None) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    if status_code not in {401, 403}:
        return None
    env_var = api_key_env_var(provider)
    if env_var:
        return f"Check credentials/permissions (try setting {env_var} or ProviderConfig.api_key)."
    return "Check credentials or session cookies for this provider."


def error_for_status(
    response: httpx.Response,
    *,
    provider: str,
    phase: str,
    body_text: str = "",
) -> ServiceError:
    """Map a non-2xx response into ServiceError with retry metadata."""
    status_code = response.status_code
    body: Any = None
    if body_text:
        try:
            body = json.loads(body_text)
        except ValueError:
            body = None

    retry_after_s = _retry_after_header(response.headers)
    if retry_after_s is None:
        retry_after_s = _retry_info_seconds(body)

    detail = _error_message_from_body(body) or body_text.strip()[:300]
    err_cls: type[ServiceError] = (
        RateLimitError if status_code == RATE_LIMIT_STATUS else ServiceError
    )
    message = f"{provider} {phase} failed (status={status_code})"
    if detail:
        message = f"{message}: {detail}"
    return err_cls(
        message,
        hint=_auth_hint(provider, status_code),
        retryable=is_retryable_status(status_code),
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


def wrap_http_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> ServiceError:
    """Map transport exceptions into ServiceError with stable retry metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, ServiceError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)

    retryable = retry_after_s is not None or is_retryable_status(status_code)
    if status_code is None:
        for e in _walk_exception_chain(exc):
            if isinstance(e, (httpx.TransportError, TimeoutError)):
                retryable = True
                break

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc) or type(exc).__name__
    err_cls: type[ServiceError] = (
        RateLimitError if status_code == RATE_LIMIT_STATUS else ServiceError
    )
    return err_cls(
        f"{msg}{status_note}: {cause}",
        hint=hint if hint is not None else _auth_hint(provider, status_code),
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )
