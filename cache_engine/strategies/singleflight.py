"""
In-process collapsing of concurrent identical loads.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

from ..shared.logging import get_logger


class _Flight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


class SingleFlight:
    """At most one in-flight call per key; later callers await its result.

    The shared call runs as its own task. A caller that is cancelled stops
    waiting without disturbing the others; when the last waiter goes away
    the shared call is cancelled too, so nobody's abandoned load finishes
    on its own. Scope is one event loop in one process.
    """

    def __init__(self):
        self.logger = get_logger("cache_engine.singleflight")
        self._flights: Dict[str, _Flight] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._flights

    def waiters(self, key: str) -> int:
        flight = self._flights.get(key)
        return flight.waiters if flight else 0

    def keys(self):
        return list(self._flights)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` for ``key`` unless a call is already in flight."""
        flight = self._flights.get(key)
        if flight is None:
            task = asyncio.ensure_future(fn())
            flight = _Flight(task)
            self._flights[key] = flight
            task.add_done_callback(lambda t, k=key: self._finished(k, t))
        else:
            self.logger.debug("Joining in-flight load", cache_key=key, waiters=flight.waiters)

        flight.waiters += 1
        cancelled = False
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            flight.waiters -= 1
            if cancelled and flight.waiters == 0 and not flight.task.done():
                self.logger.debug("Last waiter cancelled; abandoning load", cache_key=key)
                self._forget(key, flight.task)
                flight.task.cancel()

    def _forget(self, key: str, task: asyncio.Task):
        flight = self._flights.get(key)
        if flight is not None and flight.task is task:
            del self._flights[key]

    def _finished(self, key: str, task: asyncio.Task):
        self._forget(key, task)
        # Mark the exception retrieved; waiters (if any) already received it.
        if not task.cancelled():
            task.exception()
