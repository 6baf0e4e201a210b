"""
Redis implementation of the backend contract.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from ..shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from ..shared.errors import BackendUnavailable
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from ..shared.retry import RetryConfig, RetryError, retry_on_exception
from .base import CacheBackend

CONNECTIVITY_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)

# KEYS[1] = key, ARGV[1] = expected value
COMPARE_AND_DELETE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1] = key, ARGV[1] = expected value, ARGV[2] = ttl in milliseconds
COMPARE_AND_EXPIRE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS[1] = counter, ARGV[1] = ttl in milliseconds
INCREMENT_WITH_EXPIRY_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('PTTL', KEYS[1]) == -1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# KEYS[1] = set, ARGV[1] = ttl in milliseconds or -1 for none, ARGV[2..] = members
ADD_TO_INDEX_LUA = """
local current = redis.call('PTTL', KEYS[1])
local added = redis.call('SADD', KEYS[1], unpack(ARGV, 2))
local ttl = tonumber(ARGV[1])
if ttl < 0 then
    redis.call('PERSIST', KEYS[1])
elseif current == -2 or (current >= 0 and current < ttl) then
    redis.call('PEXPIRE', KEYS[1], ttl)
end
return added
"""


def _to_ms(ttl: float) -> int:
    return max(1, int(round(ttl * 1000)))


class RedisBackend(CacheBackend):
    """Backend over a shared Redis server via redis.asyncio."""

    supports_scan = True
    supports_atomic_compare = True

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.logger = get_logger("cache_engine.backend.redis")
        self.metrics = metrics
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=CONNECTIVITY_ERRORS,
            name="redis"
        )
        self._redis: Optional[redis.Redis] = client
        self._scripts: Dict[str, Any] = {}

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run one backend round-trip, mapping connectivity failures."""
        try:
            return await self.breaker.call(func, *args, **kwargs)
        except CircuitBreakerOpenException as e:
            self._record_error(operation)
            raise BackendUnavailable(operation, str(e)) from e
        except CONNECTIVITY_ERRORS as e:
            self._record_error(operation)
            self.logger.warning("Redis operation failed", operation=operation, error=str(e))
            raise BackendUnavailable(operation, str(e)) from e

    def _record_error(self, operation: str):
        if self.metrics:
            self.metrics.increment_counter("backend_errors_total", operation=operation)

    def _script(self, name: str, source: str):
        if name not in self._scripts:
            self._scripts[name] = self._get_redis().register_script(source)
        return self._scripts[name]

    async def start(self) -> None:
        """Verify connectivity, retrying a few times before giving up."""
        try:
            await self._ping_with_retry()
        except RetryError as e:
            raise BackendUnavailable("start", str(e.last_exception)) from e.last_exception
        self.logger.info("Redis backend started", redis_url=self.redis_url)

    @retry_on_exception(
        exceptions=(BackendUnavailable,),
        config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
    )
    async def _ping_with_retry(self) -> bool:
        return await self.ping()

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._get_redis().ping))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis backend stopped")

    async def get(self, key: str) -> Optional[bytes]:
        return await self._call("get", self._get_redis().get, key)

    async def set(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        px = _to_ms(ttl) if ttl is not None else None
        await self._call("set", self._get_redis().set, key, value, px=px)

    async def set_if_absent(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        px = _to_ms(ttl) if ttl is not None else None
        result = await self._call("set_if_absent", self._get_redis().set, key, value, px=px, nx=True)
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", self._get_redis().delete, key))

    async def delete_many(self, keys) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return int(await self._call("delete_many", self._get_redis().delete, *keys))

    async def increment(self, key: str) -> int:
        return int(await self._call("increment", self._get_redis().incr, key))

    async def increment_with_expiry(self, key: str, ttl: float) -> int:
        script = self._script("increment_with_expiry", INCREMENT_WITH_EXPIRY_LUA)
        return int(await self._call("increment_with_expiry", script, keys=[key], args=[_to_ms(ttl)]))

    async def expire(self, key: str, ttl: float) -> bool:
        return bool(await self._call("expire", self._get_redis().pexpire, key, _to_ms(ttl)))

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._call("ttl", self._get_redis().pttl, key)
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def publish(self, channel: str, message: bytes) -> int:
        return int(await self._call("publish", self._get_redis().publish, channel, message))

    async def subscribe(self, channel: str) -> AsyncIterator[bytes]:
        pubsub = self._get_redis().pubsub(ignore_subscribe_messages=True)
        await self._call("subscribe", pubsub.subscribe, channel)
        self.logger.info("Subscribed to channel", channel=channel)
        try:
            while True:
                try:
                    message = await pubsub.get_message(timeout=self.socket_timeout)
                except CONNECTIVITY_ERRORS as e:
                    self._record_error("subscribe")
                    raise BackendUnavailable("subscribe", str(e)) from e
                if message and message.get("type") == "message":
                    yield message["data"]
        finally:
            try:
                await pubsub.unsubscribe(channel)
            except CONNECTIVITY_ERRORS as e:
                self.logger.warning("Failed to unsubscribe cleanly", channel=channel, error=str(e))
            await pubsub.aclose()

    async def add_to_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("add_to_set", self._get_redis().sadd, key, *members))

    async def add_to_index(self, key: str, *members: str, ttl: Optional[float] = None) -> int:
        if not members:
            return 0
        script = self._script("add_to_index", ADD_TO_INDEX_LUA)
        ms = _to_ms(ttl) if ttl is not None else -1
        return int(await self._call("add_to_index", script, keys=[key], args=[ms, *members]))

    async def set_members(self, key: str) -> Set[str]:
        members = await self._call("set_members", self._get_redis().smembers, key)
        return {m.decode("utf-8") if isinstance(m, bytes) else m for m in members or ()}

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("remove_from_set", self._get_redis().srem, key, *members))

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        client = self._get_redis()
        try:
            async for key in client.scan_iter(match=pattern, count=500):
                yield key.decode("utf-8") if isinstance(key, bytes) else key
        except CONNECTIVITY_ERRORS as e:
            self._record_error("scan")
            raise BackendUnavailable("scan", str(e)) from e

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        script = self._script("compare_and_delete", COMPARE_AND_DELETE_LUA)
        result = await self._call("compare_and_delete", script, keys=[key], args=[expected])
        return bool(result)

    async def compare_and_expire(self, key: str, expected: bytes, ttl: float) -> bool:
        script = self._script("compare_and_expire", COMPARE_AND_EXPIRE_LUA)
        result = await self._call("compare_and_expire", script, keys=[key], args=[expected, _to_ms(ttl)])
        return bool(result)
