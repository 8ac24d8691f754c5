"""Bounded async retry for provider HTTP calls.

Design goals:
- Small API surface: one policy, one predicate, one loop
- Delay grows by ``backoff_multiplier`` per retry and is capped
- Only transient faults are retried (5xx, 429, transport failures)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, TypeVar

import httpx

from switchboard._http import is_retryable_status
from switchboard.errors import ServiceError, _walk_exception_chain
from switchboard.validation import ValidationResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_MAX_SANE_RETRIES = 10


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy with exponential backoff and optional jitter.

    ``max_retries`` counts retries, not attempts: a policy with
    ``max_retries=3`` makes at most four calls.
    """

    max_retries: int = 3
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = False  # "full jitter" when enabled

    @classmethod
    def defaults(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def none(cls) -> RetryPolicy:
        """A policy that never retries."""
        return cls(max_retries=0, initial_delay_s=0.0)

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.max_retries)

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        if self.max_retries < 0:
            result = result.with_error("Max retries cannot be negative")
        elif self.max_retries > _MAX_SANE_RETRIES:
            result = result.with_warning(
                f"Max retries is very high ({self.max_retries}), consider reducing"
            )
        if self.initial_delay_s < 0:
            result = result.with_error("Backoff delay cannot be negative")
        if self.backoff_multiplier <= 0:
            result = result.with_error("Backoff multiplier must be positive")
        if self.max_delay_s < self.initial_delay_s:
            result = result.with_error(
                "Max backoff delay cannot be smaller than the initial delay"
            )
        return result


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Return the sleep before retry number *retry_index* (1-based)."""
    base = policy.initial_delay_s * (
        policy.backoff_multiplier ** max(0, retry_index - 1)
    )
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    # Full jitter: random in [0, base] to avoid thundering herd.
    return random.random() * base  # noqa: S311


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, ServiceError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transport_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TransportError)):
            return True
    return False


def should_retry_http(exc: BaseException) -> bool:
    """Return True when an HTTP call failure is transient.

    Contract:
    - Cancellation is never retried.
    - ServiceError is retried when marked retryable or when it carries a
      5xx/429 status. Other 4xx statuses are never retried.
    - Raw transport failures (connect errors, timeouts) are retried.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False

    if isinstance(exc, ServiceError):
        if isinstance(exc.status_code, int):
            return is_retryable_status(exc.status_code)
        return exc.retryable is True

    return _is_transport_error(exc)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_http,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Run an async factory, retrying transient failures per *policy*."""
    attempts = policy.max_attempts

    for attempt in range(1, attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt >= attempts:
                raise

            delay = compute_backoff_delay(policy, retry_index=attempt)
            retry_after = _retry_after_from_error(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)

            logger.debug(
                "Retrying after %s (attempt %d/%d, sleeping %.2fs)",
                type(exc).__name__,
                attempt,
                attempts,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            if delay > 0:
                await asyncio.sleep(delay)

    # Loop always returns or raises.
    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
