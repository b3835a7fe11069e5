"""Observability metrics for reqagent.

Counters, histograms and gauges for provider calls, fallbacks, health
probes and context assembly. One collector is built per process by the
composition root and handed to the services that record into it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class Counter:
    """Monotonically increasing counter."""

    name: str
    value: int = 0
    labels: dict[str, str] = field(default_factory=dict)

    def inc(self, n: int = 1) -> None:
        self.value += n


@dataclass
class Histogram:
    """Tracks distribution of values in predefined buckets."""

    name: str
    buckets: list[float] = field(
        default_factory=lambda: [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000]
    )
    _counts: list[int] = field(default_factory=list)
    _sum: float = 0.0
    _count: int = 0

    def __post_init__(self) -> None:
        if not self._counts:
            self._counts = [0] * (len(self.buckets) + 1)  # +1 for +Inf

    def observe(self, value: float) -> None:
        self._sum += value
        self._count += 1
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                self._counts[i] += 1
                return
        self._counts[-1] += 1

    @property
    def count(self) -> int:
        return self._count

    @property
    def p50(self) -> float:
        return self._percentile(0.50)

    @property
    def p95(self) -> float:
        return self._percentile(0.95)

    @property
    def p99(self) -> float:
        return self._percentile(0.99)

    @property
    def avg(self) -> float:
        return self._sum / self._count if self._count else 0.0

    def _percentile(self, pct: float) -> float:
        if self._count == 0:
            return 0.0
        target = pct * self._count
        cumulative = 0
        for i, count in enumerate(self._counts):
            cumulative += count
            if cumulative >= target:
                return self.buckets[i] if i < len(self.buckets) else self.buckets[-1]
        return self.buckets[-1] if self.buckets else 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "sum": round(self._sum, 2),
            "avg": round(self.avg, 2),
            "p50": round(self.p50, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
        }


@dataclass
class Gauge:
    """Point-in-time value (can go up or down)."""

    name: str
    value: float = 0.0

    def set(self, v: float) -> None:
        self.value = v

    def inc(self, n: float = 1.0) -> None:
        self.value += n

    def dec(self, n: float = 1.0) -> None:
        self.value -= n


# ── SLO Definitions ────────────────────────────────────────────────────────


@dataclass
class SLO:
    """Service Level Objective definition."""

    name: str
    metric: str  # metric name, optionally "histogram.p95"
    target: float
    comparator: str = "lte"  # "lte", "gte", "lt", "gt"

    def evaluate(self, actual: float) -> bool:
        if self.comparator == "lte":
            return actual <= self.target
        if self.comparator == "gte":
            return actual >= self.target
        if self.comparator == "lt":
            return actual < self.target
        if self.comparator == "gt":
            return actual > self.target
        return False


_DEFAULT_SLOS = [
    SLO("llm_latency_p99", "llm_latency_ms.p99", target=30000.0, comparator="lte"),
    SLO("llm_error_rate", "llm_errors_total", target=0.2, comparator="lte"),
    SLO("provider_exhaustion_rate", "provider_exhausted_total", target=0.01, comparator="lte"),
    SLO("healthy_providers", "healthy_providers", target=1.0, comparator="gte"),
]


# ── Metrics Collector ──────────────────────────────────────────────────────


class MetricsCollector:
    """Metrics registry shared by the provider and context services."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._gauges: dict[str, Gauge] = {}
        self._slos: list[SLO] = list(_DEFAULT_SLOS)
        self._started_at = time.time()

        self._register_defaults()

    def _register_defaults(self) -> None:
        # Counters
        self.counter("llm_calls_total")
        self.counter("llm_errors_total")
        self.counter("llm_retries_total")
        self.counter("provider_switches_total")
        self.counter("provider_exhausted_total")
        self.counter("health_checks_total")
        self.counter("health_check_failures_total")
        self.counter("context_builds_total")
        self.counter("context_truncations_total")
        self.counter("large_context_loads_total")
        self.counter("large_context_errors_total")
        self.counter("documents_generated_total")

        # Histograms
        self.histogram("llm_latency_ms")
        self.histogram("health_probe_latency_ms")
        self.histogram("large_context_load_ms")

        # Gauges
        self.gauge("configured_providers")
        self.gauge("healthy_providers")
        self.gauge("context_tokens_used")
        self.gauge("context_window_utilization_pct")

    def counter(self, name: str) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name=name)
            return self._counters[name]

    def histogram(self, name: str) -> Histogram:
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name=name)
            return self._histograms[name]

    def gauge(self, name: str) -> Gauge:
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name=name)
            return self._gauges[name]

    def evaluate_slos(self) -> list[dict[str, Any]]:
        """Evaluate all SLOs against current metrics.

        Counter SLOs are rates relative to ``llm_calls_total``.
        """
        results = []
        for slo in self._slos:
            parts = slo.metric.split(".")
            metric_name = parts[0]
            sub_metric = parts[1] if len(parts) > 1 else None

            actual = 0.0
            if metric_name in self._histograms and sub_metric:
                snap = self._histograms[metric_name].snapshot()
                actual = snap.get(sub_metric, 0.0)
            elif metric_name in self._counters:
                total = self.counter("llm_calls_total").value
                actual = self._counters[metric_name].value / total if total > 0 else 0.0
            elif metric_name in self._gauges:
                actual = self._gauges[metric_name].value

            results.append({
                "name": slo.name,
                "target": slo.target,
                "actual": round(actual, 4),
                "passing": slo.evaluate(actual),
                "comparator": slo.comparator,
            })
        return results

    def snapshot(self) -> dict[str, Any]:
        """Return a full metrics snapshot."""
        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": {name: c.value for name, c in self._counters.items()},
            "histograms": {name: h.snapshot() for name, h in self._histograms.items()},
            "gauges": {name: g.value for name, g in self._gauges.items()},
            "slos": self.evaluate_slos(),
        }
