"""
Prometheus metrics for the cache coordination engine.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server


class MetricsCollector:
    """Centralized metrics collector for engine components."""

    def __init__(self, service_name: str = "cache_engine", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Private registry so several engines (and tests) can coexist in one process
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up engine metrics."""
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["strategy"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["strategy"],
            registry=self.registry
        )

        self._metrics["cache_loader_calls_total"] = Counter(
            "cache_loader_calls_total",
            "Authoritative loader invocations",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_loader_duration_seconds"] = Histogram(
            "cache_loader_duration_seconds",
            "Authoritative loader duration in seconds",
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Entries removed by invalidation",
            ["kind"],
            registry=self.registry
        )

        self._metrics["write_behind_flushes_total"] = Counter(
            "write_behind_flushes_total",
            "Write-behind persistence attempts",
            ["result"],
            registry=self.registry
        )

        self._metrics["write_behind_dead_letters_total"] = Counter(
            "write_behind_dead_letters_total",
            "Write-behind entries dropped after exhausting retries",
            registry=self.registry
        )

        self._metrics["write_behind_queue_depth"] = Gauge(
            "write_behind_queue_depth",
            "Pending write-behind entries",
            registry=self.registry
        )

        self._metrics["lock_acquisitions_total"] = Counter(
            "lock_acquisitions_total",
            "Distributed lock acquisition outcomes",
            ["result"],
            registry=self.registry
        )

        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Rate limiter decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["backend_errors_total"] = Counter(
            "backend_errors_total",
            "Backend operations that failed",
            ["operation"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.observe(value)

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Context manager to time an operation into a histogram."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.observe_histogram(metric_name, time.perf_counter() - start_time, **labels)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a metric sample from the registry."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value or 0.0

