"""
Contract over the shared key-value substrate.

Every component of the engine talks to the backend exclusively through this
interface. Each operation is individually atomic; no multi-key transactions
are assumed. Implementations raise ``BackendUnavailable`` on connectivity
loss or timeouts and never report success for a write that did not happen.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable, Optional, Set


class CacheBackend(ABC):
    """Async key-value backend with TTLs, counters, sets and pub/sub."""

    #: Backend can enumerate keys by glob pattern (``scan``).
    supports_scan: bool = False
    #: compare_and_delete / compare_and_expire are atomic on the backend.
    supports_atomic_compare: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        """Store a value; ttl in seconds, None for no expiry."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        """Store only when the key does not exist. Returns True when stored."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True when something was removed."""

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Atomically increment an integer counter, creating it at 1."""

    @abstractmethod
    async def increment_with_expiry(self, key: str, ttl: float) -> int:
        """Increment a counter and make sure it expires within ``ttl`` seconds.

        A fresh counter gets ``ttl``; an existing counter that somehow lost its
        expiry gets it back. The counter never lingers without one.
        """

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        """Set a key's time-to-live. Returns False when the key is absent."""

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, None if absent or persistent."""

    @abstractmethod
    async def publish(self, channel: str, message: bytes) -> int:
        """Publish a message; returns the number of receivers."""

    @abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[bytes]:
        """Infinite async iterator of messages; cancel the consuming task to stop."""

    @abstractmethod
    async def add_to_set(self, key: str, *members: str) -> int:
        """Add members to a set key."""

    @abstractmethod
    async def add_to_index(self, key: str, *members: str, ttl: Optional[float] = None) -> int:
        """Add members to a set and keep the set alive at least ``ttl`` seconds.

        The set's expiry only ever moves later. ``ttl`` None makes the set
        persistent, and a persistent set stays persistent.
        """

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]:
        """Return all members of a set key."""

    @abstractmethod
    async def remove_from_set(self, key: str, *members: str) -> int:
        """Remove members from a set key."""

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        """Iterate keys matching a glob pattern. Only when ``supports_scan``."""
        raise NotImplementedError(f"{type(self).__name__} cannot enumerate keys")
        yield  # pragma: no cover

    async def delete_many(self, keys: Iterable[str]) -> int:
        removed = 0
        for key in keys:
            if await self.delete(key):
                removed += 1
        return removed

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        """Delete ``key`` only if it currently holds ``expected``.

        The default is a read-check-delete sequence: another process may
        replace the value between the read and the delete. Backends that can
        do this atomically override it and set ``supports_atomic_compare``.
        """
        if await self.get(key) != expected:
            return False
        return await self.delete(key)

    async def compare_and_expire(self, key: str, expected: bytes, ttl: float) -> bool:
        """Reset ``key``'s TTL only if it currently holds ``expected``."""
        if await self.get(key) != expected:
            return False
        return await self.expire(key, ttl)

    async def start(self) -> None:
        """Verify the backend is reachable before first use."""
        await self.ping()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
