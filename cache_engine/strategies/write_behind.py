"""
Write-behind queue: deferred, ordered persistence to the authoritative store.
"""

import asyncio
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from ..shared.callbacks import invoke
from ..shared.errors import FlushExhausted
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from ..shared.retry import RetryConfig, calculate_delay


@dataclass
class PendingWrite:
    """A cache write not yet persisted to the authoritative store."""
    key: str
    value: Any
    enqueued_at: float
    attempts: int = 0
    not_before: float = 0.0
    last_error: Optional[BaseException] = None


@dataclass
class DeadLetter:
    """A write that was dropped after exhausting its retries."""
    key: str
    value: Any
    last_error: Optional[BaseException]
    attempts: int
    enqueued_at: float

    def to_exception(self) -> FlushExhausted:
        return FlushExhausted(self.key, self.attempts, self.last_error)


@dataclass
class FlushReport:
    """Outcome counts of one flush call."""
    persisted: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    superseded: int = 0


class WriteBehindQueue:
    """Ordered queue of pending writes drained by a single background worker.

    Enqueueing a key that is already waiting replaces its value in place, so
    repeated writes before a flush persist only the last one. A key whose
    save is in flight while a newer value arrives gets a fresh entry behind
    it. Failed saves are requeued with backoff; after ``max_attempts`` the
    write is reported as a ``DeadLetter`` and dropped.
    """

    def __init__(
        self,
        saver: Callable[[str, Any], Any],
        *,
        retry_config: Optional[RetryConfig] = None,
        batch_size: int = 100,
        flush_interval: float = 1.0,
        on_dead_letter: Optional[Callable[[DeadLetter], Any]] = None,
        dead_letter_history: int = 100,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.saver = saver
        self.retry_config = retry_config or RetryConfig(max_attempts=5, base_delay=0.5, max_delay=30.0)
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.on_dead_letter = on_dead_letter
        self.metrics = metrics
        self.logger = get_logger("cache_engine.write_behind")
        self._clock = clock

        self._queue: "OrderedDict[str, PendingWrite]" = OrderedDict()
        self._in_flight: Dict[str, PendingWrite] = {}
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_history)
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self.running = False

    def __len__(self) -> int:
        return len(self._queue)

    def pending(self) -> List[PendingWrite]:
        """Snapshot of waiting writes in drain order."""
        return list(self._queue.values())

    def in_flight(self) -> List[str]:
        return list(self._in_flight)

    def enqueue(self, key: str, value: Any) -> PendingWrite:
        """Queue ``value`` for persistence, superseding any waiting write of ``key``."""
        existing = self._queue.get(key)
        if existing is not None:
            existing.value = value
            existing.attempts = 0
            existing.not_before = 0.0
            existing.last_error = None
            self.logger.debug("Superseded pending write", cache_key=key)
            return existing

        pending = PendingWrite(key=key, value=value, enqueued_at=time.time())
        self._queue[key] = pending
        self._record_depth()
        if len(self._queue) >= self.batch_size:
            self._wake.set()
        return pending

    async def flush(self, force: bool = False) -> FlushReport:
        """Persist every write that is due; ``force`` ignores backoff delays."""
        report = FlushReport()
        async with self._flush_lock:
            while True:
                now = self._clock()
                batch = [p for p in self._queue.values() if force or p.not_before <= now][:self.batch_size]
                if not batch:
                    break
                for pending in batch:
                    if self._queue.get(pending.key) is not pending:
                        continue
                    await self._persist(pending, report)
                if force:
                    # Requeued entries would otherwise be retried in a tight loop
                    break
        self._record_depth()
        return report

    async def _persist(self, pending: PendingWrite, report: FlushReport):
        key = pending.key
        del self._queue[key]
        self._in_flight[key] = pending
        try:
            await invoke(self.saver, key, pending.value)
        except asyncio.CancelledError:
            self._requeue_front(pending)
            raise
        except Exception as e:
            pending.attempts += 1
            pending.last_error = e
            self._count("write_behind_flushes_total", result="failure")
            await self._handle_failure(pending, report)
        else:
            report.persisted += 1
            self._count("write_behind_flushes_total", result="success")
            self.logger.debug("Persisted pending write", cache_key=key)
        finally:
            self._in_flight.pop(key, None)

    async def _handle_failure(self, pending: PendingWrite, report: FlushReport):
        key = pending.key
        if key in self._queue:
            # A newer value arrived while this one was being saved
            report.superseded += 1
            self.logger.info("Dropping failed write superseded by newer value", cache_key=key)
            return

        if pending.attempts >= self.retry_config.max_attempts:
            report.dead_lettered += 1
            await self._dead_letter(pending)
            return

        delay = calculate_delay(pending.attempts, self.retry_config)
        pending.not_before = self._clock() + delay
        self._queue[key] = pending
        report.requeued += 1
        self.logger.warning(
            "Write-behind save failed, requeued",
            cache_key=key,
            attempts=pending.attempts,
            retry_in=round(delay, 3),
            error=str(pending.last_error)
        )

    def _requeue_front(self, pending: PendingWrite):
        if pending.key not in self._queue:
            self._queue[pending.key] = pending
            self._queue.move_to_end(pending.key, last=False)

    async def _dead_letter(self, pending: PendingWrite):
        letter = DeadLetter(
            key=pending.key,
            value=pending.value,
            last_error=pending.last_error,
            attempts=pending.attempts,
            enqueued_at=pending.enqueued_at,
        )
        self.dead_letters.append(letter)
        self._count("write_behind_dead_letters_total")
        error = letter.to_exception()
        self.logger.error(
            "Write-behind retries exhausted; write dropped",
            code=error.code,
            cache_key=letter.key,
            attempts=letter.attempts,
            error=str(letter.last_error)
        )

        if self.on_dead_letter is None:
            return
        try:
            await invoke(self.on_dead_letter, letter)
        except Exception as e:
            self.logger.error("Dead-letter handler failed", cache_key=letter.key, error=str(e))

    async def start(self):
        """Start the background flush worker."""
        if self._worker is not None and not self._worker.done():
            return
        self.running = True
        self._worker = asyncio.get_running_loop().create_task(self._run())
        self.logger.info("Write-behind worker started", flush_interval=self.flush_interval, batch_size=self.batch_size)

    async def stop(self, drain: bool = True):
        """Stop the worker; with ``drain`` persist (or dead-letter) everything left."""
        self.running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if drain:
            while self._queue:
                await self.flush(force=True)
        self.logger.info("Write-behind worker stopped", remaining=len(self._queue))

    async def _run(self):
        while self.running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

            try:
                await self.flush()
            except Exception as e:
                self.logger.error("Write-behind flush cycle failed", error=str(e))

    def _count(self, metric_name: str, **labels):
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)

    def _record_depth(self):
        if self.metrics:
            self.metrics.set_gauge("write_behind_queue_depth", len(self._queue))
