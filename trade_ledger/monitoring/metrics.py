"""
Metrics Collector

In-process counters, gauges and latency histograms for the trade
lifecycle, the query engines and the change notifier.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional


@dataclass
class MetricPoint:
    """Single metric data point."""
    name: str
    value: float
    tags: Dict[str, str]
    timestamp: float


class MetricsCollector:
    """
    Tracks:
    - Saga outcomes (completed, compensated, aborted, index deferred)
    - Trade creations and cancellations
    - Query latency
    - Change notifications delivered
    """

    def __init__(self, retention_seconds: int = 3600, histogram_size: int = 1000):
        self.retention_seconds = retention_seconds
        self.histogram_size = histogram_size

        self._metrics: Dict[str, List[MetricPoint]] = defaultdict(list)
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, List[float]] = defaultdict(list)

    def record(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Record a metric value."""
        now = time.time()
        self._metrics[name].append(MetricPoint(name, value, tags or {}, now))
        cutoff = now - self.retention_seconds
        self._metrics[name] = [m for m in self._metrics[name] if m.timestamp > cutoff]

    def increment(self, name: str, value: float = 1.0):
        self._counters[name] += value

    def set_gauge(self, name: str, value: float):
        self._gauges[name] = value

    def observe_histogram(self, name: str, value: float):
        self._histograms[name].append(value)
        if len(self._histograms[name]) > self.histogram_size:
            self._histograms[name] = self._histograms[name][-self.histogram_size:]

    # Convenience methods for ledger metrics
    def record_saga(self, status: str, latency_ms: float):
        """Record one completion protocol run."""
        self.increment("sagas_total")
        self.increment(f"sagas_{status}")
        self.record("saga_latency_ms", latency_ms, {"status": status})
        self.observe_histogram("saga_latency_distribution", latency_ms)

    def record_trade_event(self, event: str):
        self.increment(f"trades_{event}")

    def record_query(self, name: str, latency_ms: float, result_count: int):
        self.increment(f"queries_{name}")
        self.observe_histogram(f"query_{name}_latency", latency_ms)
        self.set_gauge(f"query_{name}_last_count", result_count)

    def record_notification(self, delivered: bool = True):
        self.increment("notifications_total")
        if not delivered:
            self.increment("notifications_failed")

    # Retrieval methods
    def get_counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def get_gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def get_histogram_percentile(self, name: str, percentile: float) -> float:
        values = self._histograms.get(name, [])
        if not values:
            return 0.0

        sorted_values = sorted(values)
        index = int(len(sorted_values) * percentile / 100)
        return sorted_values[min(index, len(sorted_values) - 1)]

    def get_all_metrics(self) -> Dict:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": {
                name: {
                    "p50": self.get_histogram_percentile(name, 50),
                    "p90": self.get_histogram_percentile(name, 90),
                    "p99": self.get_histogram_percentile(name, 99),
                }
                for name in self._histograms
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_summary(self) -> Dict:
        """Get a summary of key metrics."""
        total = self.get_counter("sagas_total")
        completed = self.get_counter("sagas_completed") + self.get_counter("sagas_settled_with_pending_index")

        return {
            "sagas": {
                "total": int(total),
                "completed": int(completed),
                "compensated": int(self.get_counter("sagas_compensated")),
                "aborted": int(self.get_counter("sagas_aborted")),
                "success_rate": completed / total * 100 if total > 0 else 0,
            },
            "trades": {
                "created": int(self.get_counter("trades_created")),
                "cancelled": int(self.get_counter("trades_cancelled")),
            },
            "index_updates_deferred": int(self.get_counter("index_updates_deferred")),
            "notifications": int(self.get_counter("notifications_total")),
            "latency": {
                "p50_ms": self.get_histogram_percentile("saga_latency_distribution", 50),
                "p99_ms": self.get_histogram_percentile("saga_latency_distribution", 99),
            },
        }
