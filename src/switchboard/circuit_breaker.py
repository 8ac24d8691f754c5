"""Per-provider circuit breakers.

A provider that fails ``failure_threshold`` times in a row is skipped until
``reset_timeout_s`` has passed; then one trial request is let through
(half-open) and its outcome closes or reopens the circuit.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import logging
import time

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitMetrics:
    state: CircuitState
    total_requests: int
    total_failures: int
    consecutive_failures: int

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_failures / self.total_requests


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._consecutive_failures = 0
        self._total_requests = 0
        self._total_failures = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout_s
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit %s half-open; allowing a trial request", self.name)
        return self._state

    def allow_request(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        self._total_requests += 1
        self._consecutive_failures = 0
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit %s closed", self.name)
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._total_requests += 1
        self._total_failures += 1
        self._consecutive_failures += 1
        if (
            self.state is CircuitState.HALF_OPEN
            or self._consecutive_failures >= self.failure_threshold
        ):
            self._trip()

    def force_open(self) -> None:
        self._trip()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0

    def metrics(self) -> CircuitMetrics:
        return CircuitMetrics(
            state=self.state,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            consecutive_failures=self._consecutive_failures,
        )

    def _trip(self) -> None:
        if self._state is not CircuitState.OPEN:
            logger.warning(
                "Circuit %s opened after %d consecutive failures",
                self.name,
                self._consecutive_failures,
            )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()


class CircuitBreakerRegistry:
    """Lazily creates one breaker per provider with shared settings."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                self.failure_threshold,
                self.reset_timeout_s,
                clock=self._clock,
                name=provider,
            )
            self._breakers[provider] = breaker
        return breaker

    def allows(self, provider: str) -> bool:
        return self.get(provider).allow_request()

    def metrics(self) -> dict[str, CircuitMetrics]:
        return {p: b.metrics() for p, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
