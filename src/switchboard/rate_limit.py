"""Client-side rate limiting applied before provider HTTP calls.

A token bucket refilled at ``requests_per_second`` with ``burst`` capacity.
The clock is injectable so tests can drive time explicitly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING

from switchboard.errors import RateLimitError

if TYPE_CHECKING:
    from collections.abc import Callable

    from switchboard.config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass
class RateLimiter:
    """Token bucket shared by all requests of one service instance."""

    config: RateLimitConfig
    clock: Callable[[], float] = time.monotonic
    _tokens: float = field(init=False)
    _last_refill: float = field(init=False)
    _waiters: int = field(default=0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        self._tokens = float(max(1, self.config.burst))
        self._last_refill = self.clock()

    @property
    def waiters(self) -> int:
        return self._waiters

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self._last_refill)
        capacity = float(max(1, self.config.burst))
        self._tokens = min(capacity, self._tokens + elapsed * self.config.requests_per_second)
        self._last_refill = now

    async def acquire(self) -> float:
        """Wait for a permit and return the time spent waiting."""
        if self.config.is_unlimited:
            return 0.0
        if self.config.max_queue and self._waiters >= self.config.max_queue:
            raise RateLimitError(
                f"Rate limiter queue is full ({self._waiters} waiting)",
                hint="Lower request concurrency or raise RateLimitConfig.max_queue.",
                retryable=True,
                phase="rate_limit",
            )

        self._waiters += 1
        waited = 0.0
        try:
            async with self._lock:
                self._refill()
                if self._tokens < 1.0:
                    wait = (1.0 - self._tokens) / self.config.requests_per_second
                    logger.debug("Rate limited, waiting %.3fs", wait)
                    await asyncio.sleep(wait)
                    waited = wait
                    self._refill()
                    # The sleep covered the deficit even if the clock is frozen.
                    self._tokens = max(self._tokens, 1.0)
                self._tokens -= 1.0
        finally:
            self._waiters -= 1
        return waited
