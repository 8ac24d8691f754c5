"""Create-once coordination for lazily built services."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

K = TypeVar("K")
V = TypeVar("V")


class SingleFlight(Generic[K, V]):
    """Fill *cache* so concurrent requests for one key run a single creation.

    The first caller for a missing key becomes the owner and runs the
    factory; later callers await the owner's future. Failures are shared
    with the waiters but never cached, so the next call retries.
    """

    def __init__(self, cache: dict[K, V]) -> None:
        self.cache = cache
        self._pending: dict[K, asyncio.Future[V]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: K, create: Callable[[], Awaitable[V]]) -> V:
        if key in self.cache:
            return self.cache[key]

        async with self._lock:
            if key in self.cache:
                return self.cache[key]
            waiter = self._pending.get(key)
            if waiter is None:
                flight = asyncio.get_running_loop().create_future()
                # Waiters may all be gone; keep the loop from warning about it.
                flight.add_done_callback(
                    lambda f: None if f.cancelled() else f.exception()
                )
                self._pending[key] = flight

        if waiter is not None:
            return await waiter
        return await self._fly(key, flight, create)

    async def _fly(
        self, key: K, flight: asyncio.Future[V], create: Callable[[], Awaitable[V]]
    ) -> V:
        try:
            value = await create()
        except asyncio.CancelledError:
            flight.cancel()
            raise
        except Exception as exc:
            flight.set_exception(exc)
            raise
        else:
            self.cache[key] = value
            flight.set_result(value)
            return value
        finally:
            async with self._lock:
                self._pending.pop(key, None)
