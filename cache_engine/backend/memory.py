"""
In-process backend for single-process deployments and tests.
"""

import asyncio
import fnmatch
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from ..shared.logging import get_logger
from .base import CacheBackend


class MemoryBackend(CacheBackend):
    """Dictionary-backed implementation of the backend contract.

    Operations never suspend between reading and writing their key, so each
    one is atomic with respect to other coroutines on the same event loop.
    Expiry of values and sets is evaluated lazily against ``clock``.
    """

    supports_scan = True
    supports_atomic_compare = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self.logger = get_logger("cache_engine.backend.memory")
        self._clock = clock
        self._data: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._set_deadlines: Dict[str, float] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.closed = False

    def _live(self, key: str) -> Optional[Tuple[bytes, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    def _live_set(self, key: str) -> Optional[Set[str]]:
        members = self._sets.get(key)
        if members is None:
            return None
        deadline = self._set_deadlines.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop_set(key)
            return None
        return members

    def _drop_set(self, key: str):
        self._sets.pop(key, None)
        self._set_deadlines.pop(key, None)

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    async def get(self, key: str) -> Optional[bytes]:
        item = self._live(key)
        return item[0] if item else None

    async def set(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        self._data[key] = (bytes(value), self._deadline(ttl))

    async def set_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (bytes(value), self._deadline(ttl))
        return True

    async def delete(self, key: str) -> bool:
        found = self._live(key) is not None
        self._data.pop(key, None)
        if self._live_set(key) is not None:
            found = True
        self._drop_set(key)
        return found

    async def increment(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            count, expires_at = 1, None
        else:
            count, expires_at = int(item[0]) + 1, item[1]
        self._data[key] = (str(count).encode(), expires_at)
        return count

    async def increment_with_expiry(self, key: str, ttl: float) -> int:
        item = self._live(key)
        if item is None:
            count, expires_at = 1, self._deadline(ttl)
        else:
            count, expires_at = int(item[0]) + 1, item[1]
            if expires_at is None:
                expires_at = self._deadline(ttl)
        self._data[key] = (str(count).encode(), expires_at)
        return count

    async def expire(self, key: str, ttl: float) -> bool:
        item = self._live(key)
        if item is not None:
            self._data[key] = (item[0], self._deadline(ttl))
            return True
        if self._live_set(key) is not None:
            self._set_deadlines[key] = self._deadline(ttl)
            return True
        return False

    async def ttl(self, key: str) -> Optional[float]:
        item = self._live(key)
        if item is not None:
            deadline = item[1]
        elif self._live_set(key) is not None:
            deadline = self._set_deadlines.get(key)
        else:
            return None
        if deadline is None:
            return None
        return max(0.0, deadline - self._clock())

    async def publish(self, channel: str, message: bytes) -> int:
        queues = self._subscribers.get(channel, [])
        for queue in queues:
            queue.put_nowait(bytes(message))
        return len(queues)

    async def subscribe(self, channel: str) -> AsyncIterator[bytes]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(channel, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].remove(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def add_to_set(self, key: str, *members: str) -> int:
        members_set = self._live_set(key)
        if members_set is None:
            members_set = self._sets[key] = set()
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    async def add_to_index(self, key: str, *members: str, ttl: Optional[float] = None) -> int:
        if not members:
            return 0
        existed = self._live_set(key) is not None
        added = await self.add_to_set(key, *members)
        if ttl is None:
            self._set_deadlines.pop(key, None)
        elif not existed:
            self._set_deadlines[key] = self._deadline(ttl)
        elif key in self._set_deadlines:
            self._set_deadlines[key] = max(self._set_deadlines[key], self._deadline(ttl))
        return added

    async def set_members(self, key: str) -> Set[str]:
        return set(self._live_set(key) or ())

    async def remove_from_set(self, key: str, *members: str) -> int:
        members_set = self._live_set(key)
        if not members_set:
            return 0
        removed = len(members_set.intersection(members))
        members_set.difference_update(members)
        if not members_set:
            self._drop_set(key)
        return removed

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        for key in list(self._data) + list(self._sets):
            if not fnmatch.fnmatchcase(key, pattern):
                continue
            if self._live(key) is not None or self._live_set(key) is not None:
                yield key

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        item = self._live(key)
        if item is None or item[0] != expected:
            return False
        del self._data[key]
        return True

    async def compare_and_expire(self, key: str, expected: bytes, ttl: float) -> bool:
        item = self._live(key)
        if item is None or item[0] != expected:
            return False
        self._data[key] = (item[0], self._deadline(ttl))
        return True

    async def close(self) -> None:
        self.closed = True
        self.logger.debug("Memory backend closed", keys=len(self._data))
