"""
Cache backend adapters.

`CacheBackend` is the only way higher components reach the shared key-value
substrate. `RedisBackend` talks to a Redis server; `MemoryBackend` keeps
everything in-process for single-node use and tests.
"""

from typing import Optional

from ..shared.circuit_breaker import CircuitBreaker
from ..shared.config import CacheSettings
from ..shared.metrics import MetricsCollector
from .base import CacheBackend
from .memory import MemoryBackend
from .redis_backend import CONNECTIVITY_ERRORS, RedisBackend

MEMORY_SCHEME = "memory://"


def create_backend(settings: CacheSettings, metrics: Optional[MetricsCollector] = None) -> CacheBackend:
    """Build the backend named by ``settings.redis_url``."""
    if settings.redis_url.startswith(MEMORY_SCHEME):
        return MemoryBackend()

    breaker = CircuitBreaker(
        failure_threshold=settings.breaker_failure_threshold,
        recovery_timeout=settings.breaker_recovery_seconds,
        expected_exception=CONNECTIVITY_ERRORS,
        name="redis"
    )
    return RedisBackend(
        settings.redis_url,
        socket_timeout=settings.socket_timeout_seconds,
        connect_timeout=settings.connect_timeout_seconds,
        breaker=breaker,
        metrics=metrics,
    )


__all__ = ["CacheBackend", "MemoryBackend", "RedisBackend", "create_backend"]
