"""
Billing metrics collection
Counters and timing summaries for webhooks, commissions and invoicing,
exposed in Prometheus text format
"""
import time
from typing import Dict, Optional
from collections import defaultdict
from threading import Lock
import logging

logger = logging.getLogger(__name__)

MAX_HISTOGRAM_VALUES = 1000


def _label_key(name: str, labels: Optional[Dict[str, str]]) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


class MetricsCollector:
    """
    Thread-safe in-memory metrics collector

    Counters are keyed by name plus sorted labels; histograms keep the last
    1000 observations per key.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._histograms: Dict[str, list] = defaultdict(list)

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        """
        Increment a counter metric

        Args:
            name: Metric name (e.g., "webhook_events_total")
            value: Increment value (default: 1.0)
            labels: Optional labels dict (e.g., {"type": "invoice_paid", "outcome": "applied"})
        """
        with self._lock:
            self._counters[_label_key(name, labels)] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a timing observation in seconds"""
        with self._lock:
            values = self._histograms[_label_key(name, labels)]
            values.append(value)
            if len(values) > MAX_HISTOGRAM_VALUES:
                del values[:-MAX_HISTOGRAM_VALUES]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Get current counter value"""
        with self._lock:
            return self._counters.get(_label_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """
        Get histogram statistics (count, sum, min, max, avg)
        """
        with self._lock:
            values = list(self._histograms.get(_label_key(name, labels), []))

        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0}
        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / len(values),
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def format_prometheus(self) -> str:
        """
        Format metrics in Prometheus text format

        Histograms are rendered as summaries (count, sum, p50/p95/p99).
        """
        lines = []

        with self._lock:
            for key, value in sorted(self._counters.items()):
                lines.append(f"{key} {value}")

            for key, values in sorted(self._histograms.items()):
                if not values:
                    continue
                ordered = sorted(values)
                quantiles = {
                    q: ordered[min(int(len(ordered) * q), len(ordered) - 1)]
                    for q in (0.5, 0.95, 0.99)
                }

                if "{" in key:
                    base_name, label_part = key.split("{", 1)
                    label_part = label_part.rstrip("}")
                    lines.append(f"{base_name}_count{{{label_part}}} {len(values)}")
                    lines.append(f"{base_name}_sum{{{label_part}}} {sum(values)}")
                    for q, v in quantiles.items():
                        lines.append(f'{base_name}{{{label_part},quantile="{q}"}} {v}')
                else:
                    lines.append(f"{key}_count {len(values)}")
                    lines.append(f"{key}_sum {sum(values)}")
                    for q, v in quantiles.items():
                        lines.append(f'{key}{{quantile="{q}"}} {v}')

        return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
    """Convenience function to increment counter"""
    get_metrics_collector().increment_counter(name, value, labels)


def record_histogram(name: str, value: float, labels: Optional[Dict[str, str]] = None):
    """Convenience function to record histogram"""
    get_metrics_collector().record_histogram(name, value, labels)


class Timer:
    """Context manager recording the duration of a block into a histogram"""

    def __init__(self, metric_name: str, labels: Optional[Dict[str, str]] = None):
        self.metric_name = metric_name
        self.labels = labels or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            record_histogram(self.metric_name, time.monotonic() - self.start_time, self.labels)
