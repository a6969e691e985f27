"""
Metrics — in-process counters, gauges, and histograms.

Enough to answer "how long are people waiting for locks, how often are
they denied, how many commits conflict" from the CLI health command
or ``GET /api/metrics``.  Thread-safe: the coordinator serves many
concurrent sessions.

Names used by the coordinator:
    locks.acquired / locks.denied / locks.timeout / locks.force_released
    locks.wait_ms (histogram)
    locks.held / locks.stale (gauges, refreshed on every lock listing)
    sessions.duration_ms (histogram)
    ledger.commits / ledger.conflicts / ledger.pruned
    sessions.committed / sessions.unchanged / sessions.failed
    state.restores
"""

from __future__ import annotations

import builtins
import threading
import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Counter:
    """Monotonically increasing counter."""

    name: str
    value: int = 0
    labels: dict[str, str] = field(default_factory=dict)

    def inc(self, n: int = 1) -> None:
        self.value += n

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "counter", "value": self.value, "labels": self.labels}


@dataclass
class Gauge:
    """Value that can go up and down (e.g. locks currently held)."""

    name: str
    value: float = 0.0
    labels: dict[str, str] = field(default_factory=dict)

    def set(self, v: float) -> None:
        self.value = v

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "gauge", "value": self.value, "labels": self.labels}


@dataclass
class Histogram:
    """Observations summarized as count, mean, min, max, p95."""

    name: str
    _values: list[float] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    def observe(self, value: float) -> None:
        self._values.append(value)

    @property
    def count(self) -> int:
        return len(self._values)

    @property
    def mean(self) -> float:
        return sum(self._values) / self.count if self._values else 0.0

    @property
    def p95(self) -> float:
        if not self._values:
            return 0.0
        ordered = sorted(self._values)
        return ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": "histogram",
            "count": self.count,
            "mean": round(self.mean, 2),
            "min": builtins.min(self._values) if self._values else 0.0,
            "max": builtins.max(self._values) if self._values else 0.0,
            "p95": self.p95,
            "labels": self.labels,
        }


class MetricsRegistry:
    """Central, lock-protected registry for all metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

    @staticmethod
    def _key(name: str, labels: dict[str, str]) -> str:
        if not labels:
            return name
        return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"

    def inc(self, name: str, n: int = 1, **labels: str) -> None:
        with self._lock:
            key = self._key(name, labels)
            counter = self._counters.setdefault(key, Counter(name=name, labels=labels))
            counter.inc(n)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            key = self._key(name, labels)
            self._gauges.setdefault(key, Gauge(name=name, labels=labels)).set(value)

    def observe(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            key = self._key(name, labels)
            self._histograms.setdefault(key, Histogram(name=name, labels=labels)).observe(value)

    def counter_value(self, name: str, **labels: str) -> int:
        with self._lock:
            counter = self._counters.get(self._key(name, labels))
            return counter.value if counter else 0

    def timer(self, name: str, **labels: str) -> TimerContext:
        """Context manager recording elapsed milliseconds into a histogram."""
        return TimerContext(self, name, labels)

    def to_dict(self) -> dict[str, list[dict]]:
        with self._lock:
            return {
                "counters": [c.to_dict() for c in self._counters.values()],
                "gauges": [g.to_dict() for g in self._gauges.values()],
                "histograms": [h.to_dict() for h in self._histograms.values()],
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


class TimerContext:
    def __init__(self, registry: MetricsRegistry, name: str, labels: dict[str, str]):
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> TimerContext:
        self._start = time.monotonic()
        return self

    def __exit__(self, *args: Any) -> None:
        elapsed_ms = (time.monotonic() - self._start) * 1000
        self._registry.observe(self._name, elapsed_ms, **self._labels)
