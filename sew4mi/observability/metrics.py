"""In-process counters, gauges, latency histograms and a rolling event log."""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, Optional, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

MAX_EVENTS = 200


def _key(name: str, labels: Optional[Dict[str, str]]) -> MetricKey:
    if not labels:
        return name, ()
    return name, tuple(sorted((k, str(v)) for k, v in labels.items()))


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    min_value: float = field(default=float("inf"))
    max_value: float = field(default=float("-inf"))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)

    def snapshot(self) -> Dict[str, Any]:
        if not self.count:
            return {"count": 0, "avg": 0.0, "min": None, "max": None}
        return {
            "count": self.count,
            "avg": self.total / self.count,
            "min": self.min_value,
            "max": self.max_value,
        }


_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _counters[_key(name, labels)] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _gauges[_key(name, labels)] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _histograms.setdefault(_key(name, labels), Histogram()).observe(value)


@contextmanager
def timed(name: str, labels: Optional[Dict[str, str]] = None) -> Iterator[None]:
    """Record the wall time of the wrapped block in milliseconds."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_latency(name, (time.perf_counter() - started) * 1000, labels)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    with _lock:
        _events.append({"name": name, "timestamp": time.time(), "payload": payload})


def get_counter_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    """Value of one counter series, or the sum over all series when ``labels`` is None."""
    with _lock:
        if labels is not None:
            return _counters.get(_key(name, labels), 0.0)
        return sum(value for (metric, _), value in _counters.items() if metric == name)


def get_metrics_snapshot() -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {"counters": {}, "gauges": {}, "histograms": {}}
    with _lock:
        for (name, labels), value in _counters.items():
            snapshot["counters"].setdefault(name, []).append({"labels": dict(labels), "value": value})
        for (name, labels), value in _gauges.items():
            snapshot["gauges"].setdefault(name, []).append({"labels": dict(labels), "value": value})
        for (name, labels), histogram in _histograms.items():
            snapshot["histograms"].setdefault(name, []).append(
                {"labels": dict(labels), "stats": histogram.snapshot()}
            )
        snapshot["events"] = list(_events)
    return snapshot


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()
