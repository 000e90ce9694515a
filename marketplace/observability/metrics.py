from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

MAX_EVENTS = 200


def _labels_tuple(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


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
_histograms: Dict[MetricKey, Histogram] = {}
_events: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _counters[(name, _labels_tuple(labels))] += amount


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        key = (name, _labels_tuple(labels))
        _histograms.setdefault(key, Histogram()).observe(value)


@contextmanager
def timed(name: str, labels: Optional[Dict[str, str]] = None) -> Iterator[None]:
    """Record the wall time of the block in milliseconds."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_latency(name, (time.perf_counter() - started) * 1000, labels=labels)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    event = {"name": name, "timestamp": time.time(), "payload": payload}
    with _lock:
        _events.append(event)


def counter_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    with _lock:
        return _counters.get((name, _labels_tuple(labels)), 0.0)


def _group(items, render) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for (name, labels), value in items:
        grouped[name].append({"labels": dict(labels), **render(value)})
    return dict(grouped)


def get_metrics_snapshot() -> Dict[str, Any]:
    with _lock:
        return {
            "counters": _group(_counters.items(), lambda value: {"value": value}),
            "histograms": _group(_histograms.items(), lambda hist: {"stats": hist.snapshot()}),
            "events": list(_events),
        }


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _histograms.clear()
        _events.clear()
