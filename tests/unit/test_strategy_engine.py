"""
Unit tests for the Strategy Engine.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from cache_engine.shared.errors import (
    BackendUnavailable,
    InvalidKeyError,
    LoaderFailed,
    SaverFailed,
    WriteBehindNotConfigured,
)
from cache_engine.shared.logging import cache_key_var
from cache_engine.shared.retry import RetryConfig
from cache_engine.store import EntryStore
from cache_engine.strategies import CacheLookup, RawSerializer, StrategyEngine, WriteBehindQueue
from tests.helpers import settle


class RecordingLoader:
    """Loader double that counts calls."""

    def __init__(self, values=None):
        self.values = values or {}
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        return self.values.get(key)


@pytest.fixture
def store(backend, clock):
    return EntryStore(backend, "shop", clock=clock)


@pytest.fixture
def engine(store, metrics):
    return StrategyEngine(store, default_ttl=60, min_ttl=1, max_ttl=3600, metrics=metrics)


class TestReadThrough:
    """Read-through ``get``."""

    @pytest.mark.asyncio
    async def test_miss_loads_and_caches(self, engine, metrics):
        loader = RecordingLoader({"product:1": {"name": "lamp"}})

        assert await engine.get("product:1", loader) == {"name": "lamp"}
        assert await engine.get("product:1", loader) == {"name": "lamp"}

        assert loader.calls == ["product:1"]
        assert metrics.sample("cache_misses_total", strategy="read_through") == 1
        assert metrics.sample("cache_hits_total", strategy="read_through") == 1
        assert metrics.sample("cache_loader_calls_total", result="success") == 1

    @pytest.mark.asyncio
    async def test_sync_loader_supported(self, engine):
        assert await engine.get("product:1", lambda key: {"id": key}) == {"id": "product:1"}

    @pytest.mark.asyncio
    async def test_entry_uses_default_ttl(self, engine, clock):
        loader = RecordingLoader({"product:1": "lamp"})
        await engine.get("product:1", loader)

        clock.advance(59)
        await engine.get("product:1", loader)
        assert len(loader.calls) == 1

        clock.advance(1)
        await engine.get("product:1", loader)
        assert len(loader.calls) == 2

    @pytest.mark.asyncio
    async def test_loader_failure_propagates_and_is_not_cached(self, engine, store, metrics):
        async def failing(key):
            raise ConnectionError("database down")

        with pytest.raises(LoaderFailed) as exc_info:
            await engine.get("product:1", failing)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert isinstance(exc_info.value.original, ConnectionError)
        assert exc_info.value.details["error_type"] == "ConnectionError"
        assert await store.read("product:1") is None
        assert metrics.sample("cache_loader_calls_total", result="failure") == 1

        loader = RecordingLoader({"product:1": "lamp"})
        assert await engine.get("product:1", loader) == "lamp"

    @pytest.mark.asyncio
    async def test_none_is_not_cached_by_default(self, engine):
        loader = RecordingLoader()

        assert await engine.get("product:404", loader) is None
        assert await engine.get("product:404", loader) is None
        assert len(loader.calls) == 2

    @pytest.mark.asyncio
    async def test_none_cached_when_enabled(self, store):
        engine = StrategyEngine(store, cache_none=True)
        loader = RecordingLoader()

        assert await engine.get("product:404", loader) is None
        assert await engine.get("product:404", loader) is None
        assert len(loader.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_collapse(self, engine):
        calls = 0
        gate = asyncio.Event()

        async def slow_loader(key):
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"key": key}

        tasks = [asyncio.create_task(engine.get("product:1", slow_loader)) for _ in range(10)]
        await settle()
        gate.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(r == {"key": "product:1"} for r in results)

    @pytest.mark.asyncio
    async def test_backend_read_failure_degrades_to_miss(self, engine, store):
        loader = RecordingLoader({"product:1": "lamp"})

        with patch.object(store, "read_value", AsyncMock(side_effect=BackendUnavailable("get", "down"))):
            assert await engine.get("product:1", loader) == "lamp"

        assert loader.calls == ["product:1"]

    @pytest.mark.asyncio
    async def test_backend_write_failure_still_returns_loaded_value(self, engine, store):
        loader = RecordingLoader({"product:1": "lamp"})

        with patch.object(store, "write", AsyncMock(side_effect=BackendUnavailable("set", "down"))):
            assert await engine.get("product:1", loader) == "lamp"

    @pytest.mark.asyncio
    async def test_cancelled_sole_caller_does_not_populate(self, engine, store):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return "lamp"

        task = asyncio.create_task(engine.get("product:1", slow_loader))
        await settle()
        task.cancel()
        await settle()
        gate.set()
        await settle()

        assert task.cancelled()
        assert await store.read("product:1") is None
        assert engine.in_flight_keys() == []

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_stop_remaining_caller(self, engine, store):
        gate = asyncio.Event()
        calls = 0

        async def slow_loader(key):
            nonlocal calls
            calls += 1
            await gate.wait()
            return "lamp"

        first = asyncio.create_task(engine.get("product:1", slow_loader))
        second = asyncio.create_task(engine.get("product:1", slow_loader))
        await settle()
        first.cancel()
        await settle()
        gate.set()

        assert await second == "lamp"
        assert first.cancelled()
        assert calls == 1
        assert await engine.get_manual("product:1") == CacheLookup(hit=True, value="lamp")
        assert (await store.read("product:1")).expires_at is not None

    @pytest.mark.asyncio
    async def test_loader_timed_with_cache_key_bound(self, engine, metrics):
        seen = []

        async def loader(key):
            seen.append(cache_key_var.get())
            return "lamp"

        await engine.get("product:1", loader)

        assert seen == ["product:1"]
        assert cache_key_var.get() is None
        assert metrics.sample("cache_loader_duration_seconds_count") == 1
        assert metrics.sample("cache_loader_calls_total", result="success") == 1

    @pytest.mark.asyncio
    async def test_get_many(self, engine):
        loader = RecordingLoader({"a:1": 1, "a:2": 2})

        result = await engine.get_many(["a:1", "a:2", "a:1"], loader)

        assert result == {"a:1": 1, "a:2": 2}
        assert sorted(loader.calls) == ["a:1", "a:2"]

    @pytest.mark.asyncio
    async def test_invalid_key(self, engine):
        with pytest.raises(InvalidKeyError):
            await engine.get("lock:job", RecordingLoader())


class TestWriteThrough:
    """Write-through ``put``."""

    @pytest.mark.asyncio
    async def test_put_saves_then_caches(self, engine):
        saved = {}

        async def saver(key, value):
            saved[key] = value

        await engine.put("product:1", {"name": "lamp"}, saver)
        loader = RecordingLoader()

        assert saved == {"product:1": {"name": "lamp"}}
        assert await engine.get("product:1", loader) == {"name": "lamp"}
        assert loader.calls == []

    @pytest.mark.asyncio
    async def test_saver_failure_leaves_cache_untouched(self, engine):
        await engine.set_manual("product:1", "old", 60)

        def saver(key, value):
            raise ValueError("constraint violated")

        with pytest.raises(SaverFailed) as exc_info:
            await engine.put("product:1", "new", saver)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert (await engine.get_manual("product:1")).value == "old"

    @pytest.mark.asyncio
    async def test_cache_failure_after_save_evicts_and_raises(self, engine, store):
        await engine.set_manual("product:1", "old", 60)
        saver = AsyncMock()

        with patch.object(store, "write", AsyncMock(side_effect=BackendUnavailable("set", "down"))):
            with pytest.raises(BackendUnavailable):
                await engine.put("product:1", "new", saver)

        saver.assert_awaited_once_with("product:1", "new")
        assert await store.read("product:1") is None

    @pytest.mark.asyncio
    async def test_put_during_load_wins(self, engine):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return "loaded-before-write"

        reader = asyncio.create_task(engine.get("product:1", slow_loader))
        await settle()
        assert engine.in_flight_keys() == ["product:1"]

        await engine.put("product:1", "written", AsyncMock())
        gate.set()

        assert await reader == "loaded-before-write"
        assert (await engine.get_manual("product:1")).value == "written"

    @pytest.mark.asyncio
    async def test_ttl_is_clamped(self, engine):
        assert engine.resolve_ttl(None) == 60
        assert engine.resolve_ttl(0) == 1
        assert engine.resolve_ttl(10 ** 9) == 3600
        assert engine.resolve_ttl(30) == 30


class TestWriteBehind:
    """Write-behind ``put_async``."""

    @pytest.mark.asyncio
    async def test_not_configured(self, engine):
        with pytest.raises(WriteBehindNotConfigured):
            await engine.put_async("product:1", "lamp")

    @pytest.mark.asyncio
    async def test_put_async_caches_immediately_and_queues(self, store):
        saver = AsyncMock()
        queue = WriteBehindQueue(saver, retry_config=RetryConfig(max_attempts=3, base_delay=0, jitter=False))
        engine = StrategyEngine(store, write_behind=queue)

        pending = await engine.put_async("product:1", {"name": "lamp"})

        assert pending.key == "product:1"
        assert (await engine.get_manual("product:1")).value == {"name": "lamp"}
        saver.assert_not_awaited()

        report = await queue.flush()

        assert report.persisted == 1
        saver.assert_awaited_once_with("product:1", {"name": "lamp"})

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, store):
        saver = AsyncMock()
        queue = WriteBehindQueue(saver, flush_interval=60)
        engine = StrategyEngine(store, write_behind=queue)
        await engine.start()

        await engine.put_async("product:1", "lamp")
        await engine.stop(drain=True)

        saver.assert_awaited_once_with("product:1", "lamp")
        assert len(queue) == 0


class TestCacheAside:
    """Cache-aside ``get_manual``/``set_manual``."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, engine, metrics):
        lookup = await engine.get_manual("product:1")
        assert lookup.hit is False

        await engine.set_manual("product:1", {"name": "lamp"}, 30)
        lookup = await engine.get_manual("product:1")

        assert lookup.hit is True
        assert lookup.value == {"name": "lamp"}
        assert metrics.sample("cache_hits_total", strategy="cache_aside") == 1

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self, engine):
        await engine.set_manual("product:1", None, 30)

        lookup = await engine.get_manual("product:1")

        assert lookup.hit is True
        assert lookup.value is None

    @pytest.mark.asyncio
    async def test_caller_ttl_and_no_expiry(self, engine, clock):
        await engine.set_manual("short:1", "x", 5)
        await engine.set_manual("forever:1", "y", None)

        clock.advance(10 ** 6)

        assert (await engine.get_manual("short:1")).hit is False
        assert (await engine.get_manual("forever:1")).value == "y"

    @pytest.mark.asyncio
    async def test_custom_serializer(self, engine):
        raw = RawSerializer()
        await engine.set_manual("blob:1", b"\x00\x01", 30, serializer=raw)

        lookup = await engine.get_manual("blob:1", serializer=raw)

        assert lookup.value == b"\x00\x01"

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_a_miss(self, engine):
        await engine.set_manual("blob:1", b"\xff\xfe", 30, serializer=RawSerializer())

        assert (await engine.get_manual("blob:1")).hit is False


class TestDelete:
    """Authoritative delete followed by eviction."""

    @pytest.mark.asyncio
    async def test_delete_evicts(self, engine):
        await engine.set_manual("product:1", "lamp", 60)
        deleter = AsyncMock()

        assert await engine.delete("product:1", deleter) is True

        deleter.assert_awaited_once_with("product:1")
        assert (await engine.get_manual("product:1")).hit is False

    @pytest.mark.asyncio
    async def test_deleter_failure_keeps_entry(self, engine):
        await engine.set_manual("product:1", "lamp", 60)
        deleter = AsyncMock(side_effect=RuntimeError("locked row"))

        with pytest.raises(SaverFailed):
            await engine.delete("product:1", deleter)

        assert (await engine.get_manual("product:1")).value == "lamp"


class TestInvalidationCoordination:
    """In-flight loads do not resurrect invalidated entries."""

    @pytest.mark.asyncio
    async def test_invalidated_load_is_not_cached(self, engine, store):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return "stale"

        reader = asyncio.create_task(engine.get("product:1", slow_loader))
        await settle()

        engine.note_invalidated(["product:1"])
        gate.set()

        assert await reader == "stale"
        assert await store.read("product:1") is None

    @pytest.mark.asyncio
    async def test_invalidate_everything_in_flight(self, engine, store):
        gate = asyncio.Event()

        async def slow_loader(key):
            await gate.wait()
            return key

        readers = [asyncio.create_task(engine.get(k, slow_loader)) for k in ("a:1", "a:2")]
        await settle()

        engine.note_invalidated()
        gate.set()
        await asyncio.gather(*readers)

        assert await store.read("a:1") is None
        assert await store.read("a:2") is None

    @pytest.mark.asyncio
    async def test_later_load_caches_again(self, engine, store):
        engine.note_invalidated(["product:1"])

        await engine.get("product:1", RecordingLoader({"product:1": "lamp"}))

        assert await store.read("product:1") is not None
