from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from switchboard.config import RateLimitConfig
from switchboard.errors import RateLimitError, ServiceError, ValidationError
from switchboard.rate_limit import RateLimiter
from switchboard.retry import (
    RetryPolicy,
    compute_backoff_delay,
    retry_async,
    should_retry_http,
)

pytestmark = pytest.mark.unit


def test_backoff_doubles_and_caps() -> None:
    policy = RetryPolicy(initial_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0)
    delays = [compute_backoff_delay(policy, retry_index=i) for i in range(1, 5)]
    assert delays == [1.0, 2.0, 4.0, 5.0]


def test_jittered_backoff_stays_within_base() -> None:
    policy = RetryPolicy(initial_delay_s=2.0, jitter=True)
    for _ in range(20):
        assert 0.0 <= compute_backoff_delay(policy, retry_index=1) <= 2.0


def test_policy_counts_retries_not_attempts() -> None:
    assert RetryPolicy(max_retries=3).max_attempts == 4
    assert RetryPolicy.none().max_attempts == 1


def test_policy_validation() -> None:
    assert RetryPolicy().validate().is_valid
    high = RetryPolicy(max_retries=20).validate()
    assert high.is_valid
    assert high.warnings
    bad = RetryPolicy(initial_delay_s=10.0, max_delay_s=1.0, backoff_multiplier=0).validate()
    assert "Backoff multiplier must be positive" in bad.errors
    assert "Max backoff delay cannot be smaller than the initial delay" in bad.errors


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ServiceError("x", status_code=500), True),
        (ServiceError("x", status_code=429), True),
        (ServiceError("x", status_code=400), False),
        (ServiceError("x", status_code=401, retryable=True), False),
        (ServiceError("x", retryable=True), True),
        (ServiceError("x"), False),
        (httpx.ReadTimeout("slow"), True),
        (TimeoutError(), True),
        (asyncio.CancelledError(), False),
        (ValidationError("bad"), False),
    ],
)
def test_should_retry_http(exc: BaseException, expected: bool) -> None:
    assert should_retry_http(exc) is expected


@pytest.mark.asyncio
async def test_three_server_errors_then_success() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls <= 3:
            raise ServiceError("unavailable", status_code=500, retryable=True)
        return "ok"

    with patch("switchboard.retry.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        result = await retry_async(flaky, policy=RetryPolicy(max_retries=3))

    assert result == "ok"
    assert calls == 4
    assert [c.args[0] for c in sleep_mock.await_args_list] == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries() -> None:
    calls = 0

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise ServiceError("down", status_code=503)

    with patch("switchboard.retry.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(ServiceError, match="down"):
            await retry_async(always_down, policy=RetryPolicy(max_retries=2))

    assert calls == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    calls = 0

    async def bad_request() -> None:
        nonlocal calls
        calls += 1
        raise ServiceError("bad", status_code=400)

    with pytest.raises(ServiceError):
        await retry_async(bad_request, policy=RetryPolicy(max_retries=3))

    assert calls == 1


@pytest.mark.asyncio
async def test_retry_after_extends_the_delay() -> None:
    attempts: list[int] = []

    async def limited() -> str:
        attempts.append(1)
        if len(attempts) == 1:
            raise RateLimitError("slow down", status_code=429, retry_after_s=7.0)
        return "ok"

    seen: list[tuple[int, float]] = []
    with patch("switchboard.retry.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        await retry_async(
            limited,
            policy=RetryPolicy(),
            on_retry=lambda attempt, delay, _exc: seen.append((attempt, delay)),
        )

    sleep_mock.assert_awaited_once_with(7.0)
    assert seen == [(1, 7.0)]


# =============================================================================
# Rate limiter
# =============================================================================


@pytest.mark.asyncio
async def test_rate_limiter_allows_burst_then_waits() -> None:
    limiter = RateLimiter(
        RateLimitConfig(requests_per_second=2.0, burst=2), clock=lambda: 0.0
    )

    with patch("switchboard.rate_limit.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        assert await limiter.acquire() == 0.0
        assert await limiter.acquire() == 0.0
        waited = await limiter.acquire()

    assert waited == pytest.approx(0.5)
    sleep_mock.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limiter_refills_with_time() -> None:
    now = [0.0]
    limiter = RateLimiter(
        RateLimitConfig(requests_per_second=1.0, burst=1), clock=lambda: now[0]
    )
    await limiter.acquire()
    now[0] = 1.0

    with patch("switchboard.rate_limit.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        assert await limiter.acquire() == 0.0

    sleep_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_unlimited_rate_limiter_never_waits() -> None:
    limiter = RateLimiter(RateLimitConfig.unlimited(), clock=lambda: 0.0)
    for _ in range(50):
        assert await limiter.acquire() == 0.0


@pytest.mark.asyncio
async def test_rate_limiter_rejects_when_queue_is_full() -> None:
    limiter = RateLimiter(
        RateLimitConfig(requests_per_second=1000.0, burst=1, max_queue=1),
        clock=lambda: 0.0,
    )
    await limiter.acquire()

    results = await asyncio.gather(
        limiter.acquire(), limiter.acquire(), return_exceptions=True
    )

    assert isinstance(results[0], float)
    assert isinstance(results[1], RateLimitError)
    assert results[1].retryable is True
    assert limiter.waiters == 0
