"""Periodic provider health monitoring.

The monitor only records status; it never unregisters or disables a
provider. A check that raises or exceeds ``timeout_s`` counts as unhealthy.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
import logging
import time

from switchboard.capabilities import HealthStatus

logger = logging.getLogger(__name__)

HealthCheck = Callable[[str], Awaitable[HealthStatus]]


class HealthMonitor:
    def __init__(
        self,
        check: HealthCheck,
        providers: Callable[[], Iterable[str]],
        *,
        interval_s: float = 60.0,
        timeout_s: float = 10.0,
    ) -> None:
        """``providers`` is called every round so late registrations are picked up."""
        self._check = check
        self._providers = providers
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self._statuses: dict[str, HealthStatus] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="switchboard-health-monitor"
        )
        logger.info("Health monitor started (interval=%ss)", self.interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            await self.check_all()
            await asyncio.sleep(self.interval_s)

    async def check(self, provider: str) -> HealthStatus:
        started = time.monotonic()
        try:
            status = await asyncio.wait_for(self._check(provider), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            status = HealthStatus.unhealthy(
                f"Health check timed out after {self.timeout_s}s",
                int((time.monotonic() - started) * 1000),
            )
        except Exception as exc:
            status = HealthStatus.unhealthy(f"Health check error: {exc}")
        if not status.healthy:
            logger.warning("Provider %s unhealthy: %s", provider, status.message)
        self._statuses[provider] = status
        return status

    async def check_all(self) -> dict[str, HealthStatus]:
        providers = list(self._providers())
        results = await asyncio.gather(*(self.check(p) for p in providers))
        return dict(zip(providers, results))

    def last_status(self, provider: str) -> HealthStatus | None:
        return self._statuses.get(provider)

    def statuses(self) -> dict[str, HealthStatus]:
        return dict(self._statuses)
