"""
Fixed-window rate limiter over the shared backend.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..backend.base import CacheBackend
from ..shared.errors import BackendUnavailable, RateLimitExceeded
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from ..store.models import RATE_LIMIT_PREFIX


@dataclass
class RateWindow:
    """Counter state of one subject in the current window."""
    subject: str
    window_start: float
    window: float
    count: int
    limit: int
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window

    def reset_in(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


class FixedWindowRateLimiter:
    """Counts hits per subject in wall-clock aligned windows.

    Windows start at multiples of the window length, so a burst straddling
    a boundary can let up to twice the limit through in one window length.
    Processes sharing the backend are assumed to have close clocks.
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "default",
        *,
        fail_open: bool = True,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.namespace = namespace
        self.fail_open = fail_open
        self.metrics = metrics
        self.logger = get_logger("cache_engine.rate_limiter")
        self._clock = clock

    def window_start(self, window: float, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        return (now // window) * window

    def _make_key(self, subject: str, window: float, window_start: float) -> str:
        """Generate rate limit key."""
        return f"{RATE_LIMIT_PREFIX}{self.namespace}:{subject}:{window:g}:{int(round(window_start / window))}"

    async def check(self, subject: str, limit: int, window: float) -> RateWindow:
        """Record one hit for ``subject`` and return the window state."""
        if not subject:
            raise ValueError("Rate limit subject must be non-empty")
        if limit < 0 or window <= 0:
            raise ValueError("limit must be >= 0 and window > 0")

        start = self.window_start(window)
        key = self._make_key(subject, window, start)
        try:
            count = await self.backend.increment_with_expiry(key, window)
        except BackendUnavailable as e:
            if not self.fail_open:
                raise
            self.logger.error("Rate limit check error; allowing request", subject=subject, error=str(e))
            self._count("degraded")
            return RateWindow(subject, start, window, 0, limit, degraded=True)

        state = RateWindow(subject, start, window, count, limit)
        if not state.allowed:
            self._count("rejected")
            self.logger.warning(
                "Rate limit exceeded",
                subject=subject,
                current_count=count,
                limit=limit
            )
        else:
            self._count("allowed")
        return state

    async def allow(self, subject: str, limit: int, window: float) -> bool:
        """True while ``subject`` is within ``limit`` hits for the current window."""
        return (await self.check(subject, limit, window)).allowed

    async def enforce(self, subject: str, limit: int, window: float) -> RateWindow:
        """Like ``check`` but raises ``RateLimitExceeded`` when over the limit."""
        state = await self.check(subject, limit, window)
        if not state.allowed:
            raise RateLimitExceeded(subject, limit, state.reset_in(self._clock()))
        return state

    async def status(self, subject: str, limit: int, window: float) -> RateWindow:
        """Current window state without counting a hit."""
        start = self.window_start(window)
        value = await self.backend.get(self._make_key(subject, window, start))
        count = int(value) if value else 0
        return RateWindow(subject, start, window, count, limit)

    async def reset(self, subject: str, window: float) -> bool:
        """Forget the current window's hits for ``subject``."""
        key = self._make_key(subject, window, self.window_start(window))
        removed = await self.backend.delete(key)
        self.logger.info("Rate limit reset", subject=subject)
        return removed

    def _count(self, decision: str):
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", decision=decision)
