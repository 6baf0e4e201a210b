"""
Unit tests for the Invalidation Manager.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from cache_engine.backend.memory import MemoryBackend
from cache_engine.invalidation import InvalidationEvent, InvalidationManager
from cache_engine.shared.errors import BackendUnavailable, InvalidKeyError
from cache_engine.shared.retry import RetryConfig
from cache_engine.store import EntryStore
from cache_engine.strategies import StrategyEngine
from tests.helpers import settle


@pytest.fixture
def store(backend, clock):
    return EntryStore(backend, "shop", clock=clock)


@pytest.fixture
def engine(store):
    return StrategyEngine(store)


@pytest.fixture
def manager(store, engine, metrics):
    return InvalidationManager(store, engine=engine, metrics=metrics)


class TestInvalidationEvent:
    """Broadcast payload."""

    def test_encode_decode(self):
        event = InvalidationEvent(op="evict", namespace="shop", origin="abc", target="product:1")

        assert InvalidationEvent.decode(event.encode()) == event

    def test_decode_without_target(self):
        event = InvalidationEvent.decode(b'{"op":"clear","namespace":"shop","origin":"abc"}')

        assert event.target is None


class TestEviction:
    """Explicit, group and pattern eviction."""

    @pytest.mark.asyncio
    async def test_evict(self, manager, store, metrics):
        await store.write("product:1", b"x", ttl=60)

        assert await manager.evict("product:1") is True
        assert await manager.evict("product:1") is False
        assert await store.read("product:1") is None
        assert metrics.sample("cache_evictions_total", kind="key") == 1

    @pytest.mark.asyncio
    async def test_evict_rejects_reserved_key(self, manager):
        with pytest.raises(InvalidKeyError):
            await manager.evict("lock:job")

    @pytest.mark.asyncio
    async def test_evict_many(self, manager, store):
        await store.write("product:1", b"x", ttl=60)
        await store.write("product:2", b"x", ttl=60)

        assert await manager.evict_many(["product:1", "product:2", "product:3"]) == 2

    @pytest.mark.asyncio
    async def test_evict_all_by_tag(self, manager, store, metrics):
        await store.write("product:1", b"x", ttl=60, tags=["catalog"])
        await store.write("product:2", b"x", ttl=60, tags=["catalog"])
        await store.write("order:1", b"x", ttl=60, tags=["orders"])

        assert await manager.evict_all("catalog") == 2
        assert await store.read("order:1") is not None
        assert metrics.sample("cache_evictions_total", kind="tag") == 2

    @pytest.mark.asyncio
    async def test_evict_matching(self, manager, store):
        await store.write("product:1", b"x", ttl=60)
        await store.write("product:2", b"x", ttl=60)
        await store.write("order:1", b"x", ttl=60)

        assert await manager.evict_matching("product:*") == 2
        assert await store.read("order:1") is not None

    @pytest.mark.asyncio
    async def test_clear_namespace(self, manager, store):
        await store.write("product:1", b"x", ttl=60, tags=["catalog"])
        await store.write("order:1", b"x", ttl=60)

        assert await manager.clear_namespace() == 2
        assert await store.read("product:1") is None
        assert await store.read("order:1") is None

    @pytest.mark.asyncio
    async def test_evict_blocks_inflight_load(self, manager, engine, store):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return "before-evict"

        reader = asyncio.create_task(engine.get("product:1", slow_loader))
        await settle()

        await manager.evict("product:1")
        gate.set()
        await reader

        assert await store.read("product:1") is None

    @pytest.mark.asyncio
    async def test_evict_matching_blocks_matching_inflight_loads(self, manager, engine, store):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return key

        readers = [asyncio.create_task(engine.get(k, slow_loader)) for k in ("product:1", "order:1")]
        await settle()

        await manager.evict_matching("product:*")
        gate.set()
        await asyncio.gather(*readers)

        assert await store.read("product:1") is None
        assert await store.read("order:1") is not None


class TestBroadcast:
    """Invalidation events over pub/sub."""

    @pytest.mark.asyncio
    async def test_peer_receives_event_and_origin_ignores_it(self, backend, clock):
        store = EntryStore(backend, "shop", clock=clock)
        local = InvalidationManager(store, broadcast=True)
        peer = InvalidationManager(store, broadcast=True)
        received = asyncio.Event()
        peer_events, local_events = [], []

        async def on_peer_event(event):
            peer_events.append(event)
            received.set()

        await local.start_listener(local_events.append)
        await peer.start_listener(on_peer_event)
        await settle()
        assert backend.subscriber_count(local.channel) == 2

        await store.write("product:1", b"x", ttl=60)
        await local.evict("product:1")
        await asyncio.wait_for(received.wait(), timeout=1)

        try:
            assert len(peer_events) == 1
            assert peer_events[0].op == "evict"
            assert peer_events[0].target == "product:1"
            assert peer_events[0].origin == local.instance_id
            assert local_events == []
        finally:
            await local.stop_listener()
            await peer.stop_listener()

        assert backend.subscriber_count(local.channel) == 0

    @pytest.mark.asyncio
    async def test_other_namespace_and_malformed_events_ignored(self, backend, clock):
        store = EntryStore(backend, "shop", clock=clock)
        manager = InvalidationManager(store, broadcast=True)
        received = asyncio.Event()
        events = []

        async def handler(event):
            events.append(event)
            received.set()

        await manager.start_listener(handler)
        await settle()
        try:
            await backend.publish(manager.channel, b"not json")
            await backend.publish(
                manager.channel,
                InvalidationEvent(op="clear", namespace="blog", origin="other").encode()
            )
            await backend.publish(
                manager.channel,
                InvalidationEvent(op="evict_all", namespace="shop", origin="other", target="catalog").encode()
            )
            await asyncio.wait_for(received.wait(), timeout=1)
        finally:
            await manager.stop_listener()

        assert [(e.op, e.target) for e in events] == [("evict_all", "catalog")]

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_listener(self, backend, clock):
        store = EntryStore(backend, "shop", clock=clock)
        manager = InvalidationManager(store, broadcast=True)
        received = asyncio.Event()
        events = []

        async def handler(event):
            events.append(event)
            if len(events) == 1:
                raise RuntimeError("handler bug")
            received.set()

        await manager.start_listener(handler)
        await settle()
        try:
            for target in ("product:1", "product:2"):
                await backend.publish(
                    manager.channel,
                    InvalidationEvent(op="evict", namespace="shop", origin="other", target=target).encode()
                )
            await asyncio.wait_for(received.wait(), timeout=1)
        finally:
            await manager.stop_listener()

        assert [e.target for e in events] == ["product:1", "product:2"]

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_eviction(self, backend, store):
        manager = InvalidationManager(store, broadcast=True)
        await store.write("product:1", b"x", ttl=60)

        with patch.object(backend, "publish", AsyncMock(side_effect=BackendUnavailable("publish", "down"))):
            assert await manager.evict("product:1") is True

    @pytest.mark.asyncio
    async def test_no_publish_without_broadcast(self, backend, manager, store):
        await store.write("product:1", b"x", ttl=60)

        with patch.object(backend, "publish", AsyncMock()) as publish:
            await manager.evict("product:1")

        publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listener_reconnects_after_subscription_loss(self, clock):
        class FlakyBackend(MemoryBackend):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                self.subscribe_attempts = 0

            async def subscribe(self, channel):
                self.subscribe_attempts += 1
                if self.subscribe_attempts == 1:
                    raise BackendUnavailable("subscribe", "connection reset")
                async for message in super().subscribe(channel):
                    yield message

        backend = FlakyBackend(clock=clock)
        store = EntryStore(backend, "shop", clock=clock)
        manager = InvalidationManager(
            store,
            broadcast=True,
            reconnect=RetryConfig(base_delay=0, max_delay=0, jitter=False),
        )
        received = asyncio.Event()

        await manager.start_listener(lambda event: received.set())
        await settle(10)
        try:
            assert backend.subscribe_attempts == 2
            await backend.publish(
                manager.channel,
                InvalidationEvent(op="clear", namespace="shop", origin="other").encode()
            )
            await asyncio.wait_for(received.wait(), timeout=1)
        finally:
            await manager.stop_listener()
