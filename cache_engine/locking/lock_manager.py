"""
Distributed mutual exclusion over the shared backend.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from ..backend.base import CacheBackend
from ..shared.errors import LockTimeout
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from ..shared.retry import RetryConfig, calculate_delay
from ..store.models import LOCK_PREFIX


@dataclass(frozen=True)
class Lock:
    """Proof of ownership of a named critical section."""
    name: str
    token: str
    acquired_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl


class LockManager:
    """Lease-based locks: one live holder per name, proven by token.

    Leases are never extended automatically; the TTL must outlast the
    critical section or the holder must ``renew`` it. On backends without
    atomic compare-and-delete, ``release`` is a read-check-delete sequence
    and a lease that expires between the read and the delete can remove a
    successor's lock.
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "default",
        *,
        default_ttl: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.retry_config = retry_config or RetryConfig(base_delay=0.05, max_delay=1.0, jitter=True)
        self.metrics = metrics
        self.logger = get_logger("cache_engine.locks")
        self._clock = clock
        self._monotonic = monotonic
        if not backend.supports_atomic_compare:
            self.logger.warning("Backend lacks atomic compare-and-delete; lock release is best effort")

    def lock_key(self, name: str) -> str:
        if not name:
            raise ValueError("Lock name must be non-empty")
        return f"{LOCK_PREFIX}{self.namespace}:{name}"

    async def try_acquire(self, name: str, ttl: Optional[float] = None) -> Optional[Lock]:
        """Single attempt; None when someone else holds the lock."""
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            raise ValueError("Lock TTL must be positive")
        token = uuid.uuid4().hex
        acquired = await self.backend.set_if_absent(self.lock_key(name), token.encode(), ttl)
        if not acquired:
            return None
        return Lock(name=name, token=token, acquired_at=self._clock(), ttl=ttl)

    async def acquire(self, name: str, ttl: Optional[float] = None, wait: float = 0.0) -> Lock:
        """Acquire ``name``, retrying with jittered backoff for up to ``wait`` seconds."""
        started = self._monotonic()
        attempt = 0
        while True:
            attempt += 1
            lock = await self.try_acquire(name, ttl)
            if lock is not None:
                self._count("acquired")
                self.logger.info("Lock acquired", lock=name, attempts=attempt, ttl=lock.ttl)
                return lock

            elapsed = self._monotonic() - started
            remaining = wait - elapsed
            if remaining <= 0:
                self._count("timeout")
                self.logger.info("Lock acquisition timed out", lock=name, waited=round(elapsed, 3))
                raise LockTimeout(name, elapsed)

            delay = min(calculate_delay(attempt, self.retry_config), remaining)
            await asyncio.sleep(delay)

    async def release(self, lock: Lock) -> bool:
        """Release if still owned. Releasing an expired or released lock is a no-op."""
        released = await self.backend.compare_and_delete(self.lock_key(lock.name), lock.token.encode())
        if released:
            self.logger.info("Lock released", lock=lock.name)
        else:
            self.logger.debug("Lock no longer held at release", lock=lock.name)
        return released

    async def renew(self, lock: Lock, ttl: Optional[float] = None) -> Optional[Lock]:
        """Extend a held lease; returns the renewed Lock, or None if it was lost."""
        ttl = ttl if ttl is not None else lock.ttl
        renewed = await self.backend.compare_and_expire(self.lock_key(lock.name), lock.token.encode(), ttl)
        if not renewed:
            self.logger.warning("Lock lost before renewal", lock=lock.name)
            return None
        return Lock(name=lock.name, token=lock.token, acquired_at=self._clock(), ttl=ttl)

    async def is_locked(self, name: str) -> bool:
        return await self.backend.get(self.lock_key(name)) is not None

    @asynccontextmanager
    async def hold(self, name: str, ttl: Optional[float] = None, wait: float = 0.0) -> AsyncIterator[Lock]:
        """``async with locks.hold("job", ttl=10):`` acquire, then always release."""
        lock = await self.acquire(name, ttl, wait)
        try:
            yield lock
        finally:
            await self.release(lock)

    def _count(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("lock_acquisitions_total", result=result)
