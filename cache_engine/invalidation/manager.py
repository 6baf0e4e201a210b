"""
Explicit, group and pattern invalidation of cache entries.
"""

import asyncio
import fnmatch
import json
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable, Optional

from ..shared.callbacks import invoke
from ..shared.errors import BackendUnavailable
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from ..shared.retry import RetryConfig, calculate_delay
from ..store.entry_store import EntryStore
from ..store.models import validate_key


@dataclass
class InvalidationEvent:
    """Broadcast describing an invalidation performed by one process."""
    op: str                 # evict | evict_all | evict_matching | clear
    namespace: str
    origin: str
    target: Optional[str] = None

    def encode(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, payload: bytes) -> "InvalidationEvent":
        data = json.loads(payload.decode("utf-8"))
        return cls(op=data["op"], namespace=data["namespace"], origin=data["origin"], target=data.get("target"))


class InvalidationManager:
    """Removes entries from the Entry Store on the application's request.

    Ordering against concurrent writes is whatever the backend serializes
    last for the single key; nothing extra is layered on top. When an engine
    is attached, in-flight read-through loads of the invalidated keys are
    prevented from caching what they loaded before the eviction.
    """

    def __init__(
        self,
        store: EntryStore,
        *,
        engine=None,
        channel: str = "cache-invalidation",
        broadcast: bool = False,
        metrics: Optional[MetricsCollector] = None,
        reconnect: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.engine = engine
        self.channel = channel
        self.broadcast = broadcast
        self.metrics = metrics
        self.reconnect = reconnect or RetryConfig(base_delay=0.5, max_delay=30.0)
        self.instance_id = uuid.uuid4().hex
        self.logger = get_logger("cache_engine.invalidation")
        self._listener: Optional[asyncio.Task] = None

    async def evict(self, key: str) -> bool:
        """Delete one entry."""
        validate_key(key)
        self._notify_engine([key])
        removed = await self.store.remove(key)
        self._count("key", 1 if removed else 0)
        self.logger.info("Evicted cache entry", cache_key=key, removed=removed)
        await self._announce("evict", key)
        return removed

    async def evict_many(self, keys: Iterable[str]) -> int:
        keys = [validate_key(k) for k in keys]
        self._notify_engine(keys)
        removed = await self.store.remove_many(keys)
        self._count("key", removed)
        for key in keys:
            await self._announce("evict", key)
        return removed

    async def evict_all(self, group_tag: str) -> int:
        """Delete every entry tagged with ``group_tag`` at write time."""
        self._notify_engine(None)
        removed = await self.store.remove_tagged(group_tag)
        self._count("tag", removed)
        self.logger.info("Evicted tagged entries", tag=group_tag, removed=removed)
        await self._announce("evict_all", group_tag)
        return removed

    async def evict_matching(self, pattern: str) -> int:
        """Delete every entry whose key matches a glob pattern."""
        if self.engine is not None:
            self.engine.note_invalidated(
                k for k in self.engine.in_flight_keys() if fnmatch.fnmatchcase(k, pattern)
            )
        removed = await self.store.remove_matching(pattern)
        self._count("pattern", removed)
        self.logger.info("Evicted matching entries", pattern=pattern, removed=removed)
        await self._announce("evict_matching", pattern)
        return removed

    async def clear_namespace(self) -> int:
        """Delete every entry of the namespace. Costs O(number of keys)."""
        self._notify_engine(None)
        removed = await self.store.clear()
        self._count("namespace", removed)
        await self._announce("clear")
        return removed

    # Broadcast

    async def _announce(self, op: str, target: Optional[str] = None):
        if not self.broadcast:
            return
        event = InvalidationEvent(op=op, namespace=self.store.namespace, origin=self.instance_id, target=target)
        try:
            await self.store.backend.publish(self.channel, event.encode())
        except BackendUnavailable as e:
            # The eviction itself is done; peers fall back to TTL expiry
            self.logger.warning("Failed to broadcast invalidation", op=op, target=target, error=str(e))

    async def start_listener(self, handler: Callable[[InvalidationEvent], Any]) -> asyncio.Task:
        """Consume peers' invalidation events and hand them to ``handler``."""
        if self._listener is not None and not self._listener.done():
            return self._listener
        self._listener = asyncio.get_running_loop().create_task(self._listen(handler))
        return self._listener

    async def stop_listener(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

    async def _listen(self, handler: Callable[[InvalidationEvent], Any]):
        failures = 0
        while True:
            try:
                async for payload in self.store.backend.subscribe(self.channel):
                    failures = 0
                    await self._dispatch(payload, handler)
            except BackendUnavailable as e:
                failures += 1
                delay = calculate_delay(failures, self.reconnect)
                self.logger.warning("Invalidation subscription lost, reconnecting", delay=round(delay, 3), error=str(e))
                await asyncio.sleep(delay)

    async def _dispatch(self, payload: bytes, handler: Callable[[InvalidationEvent], Any]):
        try:
            event = InvalidationEvent.decode(payload)
        except (ValueError, KeyError) as e:
            self.logger.warning("Ignoring malformed invalidation event", error=str(e))
            return

        if event.origin == self.instance_id or event.namespace != self.store.namespace:
            return

        try:
            await invoke(handler, event)
        except Exception as e:
            self.logger.error("Invalidation handler failed", op=event.op, target=event.target, error=str(e))

    def _notify_engine(self, keys: Optional[Iterable[str]]):
        if self.engine is not None:
            self.engine.note_invalidated(keys)

    def _count(self, kind: str, amount: int):
        if self.metrics and amount:
            metric = self.metrics.get_metric("cache_evictions_total")
            metric.labels(kind=kind).inc(amount)
