# ridenotify/infra/metrics.py
"""
Delivery counters and FCM send latency, served as JSON at ``/metrics``.

Counter keys carry their labels inline, e.g.
``fcm_outbound_error{status=404}``.
"""
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict

from ridenotify.infra.logging_config import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._timings: Dict[str, list[float]] = defaultdict(lambda: [0, 0.0])
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def record_duration(self, name: str, seconds: float) -> None:
        with self._lock:
            slot = self._timings[name]
            slot[0] += 1
            slot[1] += seconds

    def get_counter(self, name: str, **labels) -> int:
        key = self._make_key(name, labels or None)
        with self._lock:
            return self._counters.get(key, 0)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            timings = {
                name: {"count": count, "avg_s": total / count if count else 0.0}
                for name, (count, total) in self._timings.items()
            }
        return {"counters": counters, "timings": timings}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


class Timer:
    """Adds the elapsed time of the block to the named timing, also on error."""

    def __init__(self, metric_name: str):
        self.metric_name = metric_name
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            _metrics.record_duration(self.metric_name, time.monotonic() - self.start_time)
