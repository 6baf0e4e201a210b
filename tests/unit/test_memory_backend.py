"""
Unit tests for the in-process MemoryBackend.
"""

import asyncio

import pytest

from tests.helpers import settle


class TestMemoryBackendKeys:
    """Key/value, TTL and counter behaviour."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, backend):
        await backend.set("k", b"value")

        assert await backend.get("k") == b"value"
        assert await backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_entry_expires_with_clock(self, backend, clock):
        await backend.set("k", b"value", ttl=5)

        clock.advance(4)
        assert await backend.get("k") == b"value"
        assert await backend.ttl("k") == pytest.approx(1)

        clock.advance(1)
        assert await backend.get("k") is None
        assert await backend.ttl("k") is None

    @pytest.mark.asyncio
    async def test_ttl_is_none_for_persistent_key(self, backend):
        await backend.set("k", b"value")

        assert await backend.ttl("k") is None

    @pytest.mark.asyncio
    async def test_set_if_absent(self, backend, clock):
        assert await backend.set_if_absent("k", b"first", ttl=1) is True
        assert await backend.set_if_absent("k", b"second", ttl=1) is False
        assert await backend.get("k") == b"first"

        clock.advance(1)
        assert await backend.set_if_absent("k", b"third") is True
        assert await backend.get("k") == b"third"

    @pytest.mark.asyncio
    async def test_delete_reports_removal(self, backend):
        await backend.set("k", b"value")

        assert await backend.delete("k") is True
        assert await backend.delete("k") is False

    @pytest.mark.asyncio
    async def test_increment_keeps_expiry(self, backend, clock):
        assert await backend.increment("counter") == 1
        await backend.expire("counter", 10)

        clock.advance(3)
        assert await backend.increment("counter") == 2
        assert await backend.ttl("counter") == pytest.approx(7)

    @pytest.mark.asyncio
    async def test_increment_with_expiry(self, backend, clock):
        assert await backend.increment_with_expiry("counter", 10) == 1
        clock.advance(4)
        assert await backend.increment_with_expiry("counter", 10) == 2
        assert await backend.ttl("counter") == pytest.approx(6)

        clock.advance(6)
        assert await backend.increment_with_expiry("counter", 10) == 1

    @pytest.mark.asyncio
    async def test_increment_with_expiry_repairs_persistent_counter(self, backend):
        await backend.increment("counter")

        assert await backend.increment_with_expiry("counter", 10) == 2
        assert await backend.ttl("counter") == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_expire_missing_key(self, backend):
        assert await backend.expire("missing", 10) is False

    @pytest.mark.asyncio
    async def test_delete_many(self, backend):
        await backend.set("a", b"1")
        await backend.set("b", b"2")

        assert await backend.delete_many(["a", "b", "c"]) == 2


class TestMemoryBackendExtensions:
    """Sets, scan and compare operations."""

    @pytest.mark.asyncio
    async def test_set_operations(self, backend):
        assert await backend.add_to_set("s", "a", "b") == 2
        assert await backend.add_to_set("s", "b", "c") == 1
        assert await backend.set_members("s") == {"a", "b", "c"}

        assert await backend.remove_from_set("s", "a", "z") == 1
        assert await backend.set_members("s") == {"b", "c"}

        await backend.remove_from_set("s", "b", "c")
        assert await backend.set_members("s") == set()

    @pytest.mark.asyncio
    async def test_add_to_index_only_extends_expiry(self, backend, clock):
        assert await backend.add_to_index("idx", "a", ttl=100) == 1
        await backend.add_to_index("idx", "b", ttl=5)
        assert await backend.ttl("idx") == pytest.approx(100)

        clock.advance(50)
        await backend.add_to_index("idx", "c", ttl=80)
        assert await backend.ttl("idx") == pytest.approx(80)

        clock.advance(80)
        assert await backend.set_members("idx") == set()

    @pytest.mark.asyncio
    async def test_add_to_index_without_ttl_is_persistent(self, backend, clock):
        await backend.add_to_index("idx", "a", ttl=5)
        await backend.add_to_index("idx", "b")
        await backend.add_to_index("idx", "c", ttl=5)

        clock.advance(10 ** 6)

        assert await backend.set_members("idx") == {"a", "b", "c"}
        assert await backend.ttl("idx") is None

    @pytest.mark.asyncio
    async def test_sets_honour_expire_and_delete(self, backend, clock):
        await backend.add_to_set("s", "a")

        assert await backend.expire("s", 5) is True
        assert await backend.ttl("s") == pytest.approx(5)
        assert [k async for k in backend.scan("s")] == ["s"]

        clock.advance(5)
        assert await backend.set_members("s") == set()
        assert await backend.delete("s") is False

    @pytest.mark.asyncio
    async def test_scan_matches_live_keys(self, backend, clock):
        await backend.set("ns:a:1", b"x")
        await backend.set("ns:a:2", b"x", ttl=1)
        await backend.set("ns:b:1", b"x")
        clock.advance(2)

        keys = [k async for k in backend.scan("ns:a:*")]

        assert keys == ["ns:a:1"]

    @pytest.mark.asyncio
    async def test_compare_and_delete(self, backend):
        await backend.set("lock", b"token-1")

        assert await backend.compare_and_delete("lock", b"token-2") is False
        assert await backend.get("lock") == b"token-1"
        assert await backend.compare_and_delete("lock", b"token-1") is True
        assert await backend.get("lock") is None

    @pytest.mark.asyncio
    async def test_compare_and_expire(self, backend, clock):
        await backend.set("lock", b"token", ttl=2)

        assert await backend.compare_and_expire("lock", b"other", 10) is False
        assert await backend.compare_and_expire("lock", b"token", 10) is True
        clock.advance(5)
        assert await backend.get("lock") == b"token"

    @pytest.mark.asyncio
    async def test_close_marks_backend_closed(self, backend):
        await backend.close()

        assert backend.closed is True


class TestMemoryBackendPubSub:
    """Publish/subscribe over asyncio queues."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self, backend):
        received = []

        async def consume():
            stream = backend.subscribe("events")
            try:
                async for message in stream:
                    received.append(message)
                    if len(received) == 2:
                        break
            finally:
                await stream.aclose()

        task = asyncio.create_task(consume())
        await settle()
        assert backend.subscriber_count("events") == 1

        assert await backend.publish("events", b"one") == 1
        await backend.publish("events", b"two")
        await asyncio.wait_for(task, timeout=1)

        assert received == [b"one", b"two"]
        assert backend.subscriber_count("events") == 0

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self, backend):
        assert await backend.publish("nobody", b"hello") == 0
