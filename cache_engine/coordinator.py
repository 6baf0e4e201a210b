"""
Cache coordinator: builds every engine component over one backend and owns
their lifecycle.
"""

import time
from typing import Any, Callable, Dict, Optional

from .backend import CacheBackend, create_backend
from .invalidation import InvalidationManager
from .locking import LockManager
from .ratelimit import FixedWindowRateLimiter
from .shared.config import CacheSettings, get_settings
from .shared.errors import BackendUnavailable
from .shared.logging import get_logger
from .shared.metrics import MetricsCollector
from .shared.retry import RetryConfig
from .store import EntryStore
from .strategies import DeadLetter, StrategyEngine, WriteBehindQueue


class CacheCoordinator:
    """Engine entry point for an embedding service.

    ``saver`` enables write-behind: it is the authoritative persist callback
    the background worker calls with ``(key, value)``.

    Usage::

        async with CacheCoordinator(get_settings(), saver=repo.save) as cache:
            product = await cache.engine.get("product:42", repo.load)
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        saver: Optional[Callable[[str, Any], Any]] = None,
        on_dead_letter: Optional[Callable[[DeadLetter], Any]] = None,
        backend: Optional[CacheBackend] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger("cache_engine.coordinator")
        self.metrics = metrics or MetricsCollector()
        self.backend = backend or create_backend(self.settings, self.metrics)
        s = self.settings

        self.store = EntryStore(self.backend, s.namespace, clock=clock)

        self.write_behind: Optional[WriteBehindQueue] = None
        if saver is not None:
            self.write_behind = WriteBehindQueue(
                saver,
                retry_config=RetryConfig(
                    max_attempts=s.write_behind_max_attempts,
                    base_delay=s.write_behind_base_delay_seconds,
                    max_delay=s.write_behind_max_delay_seconds,
                ),
                batch_size=s.write_behind_batch_size,
                flush_interval=s.write_behind_flush_interval_seconds,
                on_dead_letter=on_dead_letter,
                dead_letter_history=s.dead_letter_history,
                metrics=self.metrics,
            )

        self.engine = StrategyEngine(
            self.store,
            default_ttl=s.default_ttl_seconds,
            min_ttl=s.min_ttl_seconds,
            max_ttl=s.max_ttl_seconds,
            write_behind=self.write_behind,
            cache_none=s.cache_none_values,
            metrics=self.metrics,
        )
        self.invalidation = InvalidationManager(
            self.store,
            engine=self.engine,
            channel=s.invalidation_channel,
            broadcast=s.broadcast_invalidations,
            metrics=self.metrics,
        )
        self.locks = LockManager(
            self.backend,
            s.namespace,
            default_ttl=s.lock_default_ttl_seconds,
            retry_config=RetryConfig(
                base_delay=s.lock_retry_base_delay_seconds,
                max_delay=s.lock_retry_max_delay_seconds,
            ),
            metrics=self.metrics,
            clock=clock,
        )
        self.rate_limiter = FixedWindowRateLimiter(
            self.backend,
            s.namespace,
            fail_open=s.rate_limit_fail_open,
            metrics=self.metrics,
            clock=clock,
        )
        self.started = False

    async def start(self):
        """Connect to the backend and start background workers.

        Raises ``BackendUnavailable`` when the backend cannot be reached; the
        backend is closed again before the error propagates.
        """
        try:
            await self.backend.start()
            await self.engine.start()
        except Exception:
            await self.backend.close()
            raise
        if self.settings.metrics_port:
            self.metrics.start_metrics_server(self.settings.metrics_port)
        self.started = True
        self.logger.info(
            "Cache coordinator started",
            namespace=self.settings.namespace,
            write_behind=self.write_behind is not None,
            broadcast=self.settings.broadcast_invalidations
        )

    async def stop(self, drain: bool = True):
        """Drain pending writes, stop listeners and close the backend."""
        try:
            await self.engine.stop(drain=drain)
            await self.invalidation.stop_listener()
        finally:
            await self.backend.close()
            self.started = False
            self.logger.info("Cache coordinator stopped")

    async def __aenter__(self) -> "CacheCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def health_check(self) -> Dict[str, Any]:
        """Backend reachability plus write-behind backlog."""
        try:
            backend_ok = await self.backend.ping()
            backend_status = "ok" if backend_ok else "error"
        except BackendUnavailable as e:
            self.logger.warning("Health check ping failed", error=str(e))
            backend_status = "error"

        health: Dict[str, Any] = {
            "status": backend_status,
            "namespace": self.settings.namespace,
            "backend": backend_status,
            "in_flight_loads": len(self.engine.in_flight_keys()),
        }
        breaker = getattr(self.backend, "breaker", None)
        if breaker is not None:
            health["circuit_breaker"] = breaker.get_state()["state"]
        if self.write_behind is not None:
            health["write_behind"] = {
                "pending": len(self.write_behind),
                "in_flight": len(self.write_behind.in_flight()),
                "dead_letters": len(self.write_behind.dead_letters),
                "running": self.write_behind.running,
            }
        return health
