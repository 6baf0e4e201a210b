"""
Strategy Engine: read-through, write-through, write-behind and cache-aside
access over the Entry Store.
"""

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from ..shared.callbacks import invoke
from ..shared.errors import BackendUnavailable, LoaderFailed, SaverFailed, WriteBehindNotConfigured
from ..shared.logging import get_logger, set_cache_key
from ..shared.metrics import MetricsCollector
from ..store.entry_store import EntryStore
from ..store.models import validate_key
from .serializers import JsonSerializer, Serializer
from .singleflight import SingleFlight
from .write_behind import PendingWrite, WriteBehindQueue

Loader = Callable[[str], Union[Any, Awaitable[Any]]]
Saver = Callable[[str, Any], Union[Any, Awaitable[Any]]]
Deleter = Callable[[str], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache-aside read."""
    hit: bool
    value: Any = None


MISS = CacheLookup(hit=False)


class StrategyEngine:
    """Applies the cache consistency strategies for one Entry Store.

    Loader and saver callbacks may be plain functions or coroutines. Their
    failures are wrapped in ``LoaderFailed``/``SaverFailed`` (original as
    ``__cause__``) and never reach the cache. Backend read errors degrade to
    a miss; backend write errors on the write paths are raised.
    """

    def __init__(
        self,
        store: EntryStore,
        *,
        default_ttl: float = 300.0,
        min_ttl: float = 1.0,
        max_ttl: float = 86400.0,
        serializer: Optional[Serializer] = None,
        write_behind: Optional[WriteBehindQueue] = None,
        cache_none: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl
        self.serializer = serializer or JsonSerializer()
        self.write_behind = write_behind
        self.cache_none = cache_none
        self.metrics = metrics
        self.logger = get_logger("cache_engine.strategies")
        self._flights = SingleFlight()
        # Keys whose in-flight load was overtaken by a write or an invalidation
        self._stale: Set[str] = set()

    def resolve_ttl(self, ttl: Optional[float]) -> float:
        if ttl is None:
            return self.default_ttl
        return max(self.min_ttl, min(self.max_ttl, float(ttl)))

    # Read-through

    async def get(
        self,
        key: str,
        loader: Loader,
        *,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value, loading and caching it on a miss.

        Concurrent misses for the same key share one loader call.
        """
        validate_key(key)
        lookup = await self._lookup(key, self.serializer, "read_through")
        if lookup.hit:
            return lookup.value

        tags = tuple(tags)
        return await self._flights.do(key, lambda: self._load(key, loader, ttl, tags))

    async def get_many(self, keys: Iterable[str], loader: Loader, *, ttl: Optional[float] = None) -> Dict[str, Any]:
        keys = list(dict.fromkeys(keys))
        values = await asyncio.gather(*(self.get(k, loader, ttl=ttl) for k in keys))
        return dict(zip(keys, values))

    async def _load(self, key: str, loader: Loader, ttl: Optional[float], tags: tuple) -> Any:
        self._stale.discard(key)
        # Runs in its own task, so the binding stays with this load
        set_cache_key(key)
        timer = self.metrics.time_operation("cache_loader_duration_seconds") if self.metrics else nullcontext()
        try:
            with timer:
                value = await invoke(loader, key)
        except Exception as e:
            self._count("cache_loader_calls_total", result="failure")
            self.logger.warning("Loader failed; cache not populated", cache_key=key, error=str(e))
            raise LoaderFailed(key, e) from e

        self._count("cache_loader_calls_total", result="success")
        try:
            if value is None and not self.cache_none:
                return None
            if key in self._stale:
                self.logger.info("Load overtaken by write or invalidation; not caching", cache_key=key)
                return value
            if self._flights.waiters(key) == 0:
                self.logger.debug("No caller awaiting load; not caching", cache_key=key)
                return value

            data = self.serializer.dumps(value)
            try:
                await self.store.write(key, data, self.resolve_ttl(ttl), tags)
            except BackendUnavailable as e:
                self.logger.warning("Could not populate cache after load", cache_key=key, error=str(e))
            return value
        finally:
            self._stale.discard(key)

    # Write-through

    async def put(
        self,
        key: str,
        value: Any,
        saver: Saver,
        *,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Persist via ``saver`` first; cache only after it succeeds."""
        validate_key(key)
        data = self.serializer.dumps(value)
        try:
            await invoke(saver, key, value)
        except Exception as e:
            self.logger.warning("Saver failed; cache left untouched", cache_key=key, error=str(e))
            raise SaverFailed(key, e) from e

        self._mark_stale(key)
        try:
            await self.store.write(key, data, self.resolve_ttl(ttl), tags)
        except BackendUnavailable as e:
            self.logger.error("Write-through cache update failed after save", cache_key=key, error=str(e))
            await self._discard_quietly(key)
            raise
        return value

    # Write-behind

    async def put_async(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> PendingWrite:
        """Cache immediately and queue the authoritative write."""
        if self.write_behind is None:
            raise WriteBehindNotConfigured()
        validate_key(key)
        data = self.serializer.dumps(value)

        self._mark_stale(key)
        await self.store.write(key, data, self.resolve_ttl(ttl), tags)
        return self.write_behind.enqueue(key, value)

    # Cache-aside

    async def get_manual(self, key: str, *, serializer: Optional[Serializer] = None) -> CacheLookup:
        """Raw cache lookup; the caller decides what to do on a miss."""
        validate_key(key)
        return await self._lookup(key, serializer or self.serializer, "cache_aside")

    async def set_manual(
        self,
        key: str,
        value: Any,
        ttl: Optional[float],
        *,
        serializer: Optional[Serializer] = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store ``value`` with a caller-chosen TTL (None keeps it until evicted)."""
        validate_key(key)
        data = (serializer or self.serializer).dumps(value)
        self._mark_stale(key)
        await self.store.write(key, data, ttl, tags)

    # Delete

    async def delete(self, key: str, deleter: Deleter) -> bool:
        """Delete from the authoritative store, then evict the cached copy."""
        validate_key(key)
        try:
            await invoke(deleter, key)
        except Exception as e:
            self.logger.warning("Authoritative delete failed; cache left untouched", cache_key=key, error=str(e))
            raise SaverFailed(key, e) from e

        self._mark_stale(key)
        return await self.store.remove(key)

    # Invalidation coordination

    def note_invalidated(self, keys: Optional[Iterable[str]] = None) -> None:
        """Stop in-flight loads of ``keys`` (all of them when None) from caching."""
        in_flight = self._flights.keys()
        if keys is None:
            self._stale.update(in_flight)
            return
        for key in keys:
            self._mark_stale(key)

    def _mark_stale(self, key: str) -> None:
        if self._flights.in_flight(key):
            self._stale.add(key)

    def in_flight_keys(self) -> List[str]:
        return self._flights.keys()

    # Lifecycle

    async def start(self):
        if self.write_behind is not None:
            await self.write_behind.start()

    async def stop(self, drain: bool = True):
        if self.write_behind is not None:
            await self.write_behind.stop(drain=drain)

    # Helpers

    async def _lookup(self, key: str, serializer: Serializer, strategy: str) -> CacheLookup:
        try:
            data = await self.store.read_value(key)
        except BackendUnavailable as e:
            self.logger.warning("Cache read failed; treating as miss", cache_key=key, error=str(e))
            data = None

        if data is not None:
            try:
                value = serializer.loads(data)
            except (ValueError, TypeError) as e:
                self.logger.warning("Undecodable cache entry; treating as miss", cache_key=key, error=str(e))
            else:
                self._count("cache_hits_total", strategy=strategy)
                self.logger.debug("Cache hit", cache_key=key, strategy=strategy)
                return CacheLookup(hit=True, value=value)

        self._count("cache_misses_total", strategy=strategy)
        return MISS

    async def _discard_quietly(self, key: str):
        try:
            await self.store.remove(key)
        except BackendUnavailable as e:
            self.logger.error("Could not evict possibly stale entry", cache_key=key, error=str(e))

    def _count(self, metric_name: str, **labels):
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
