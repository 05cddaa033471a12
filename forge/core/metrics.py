"""forge.core.metrics

A tiny metrics surface.

No Prometheus dependency here. Just a stable interface that can be wired later.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


@dataclass
class Counter:
    name: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return float(self._value)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, Counter] = {}

    def counter(self, name: str) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name=name)
            return self._counters[name]

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return {f"counter.{k}": v.value for k, v in self._counters.items()}


REGISTRY = MetricsRegistry()

LEGS_APPENDED = "legs.appended"
LEGS_DUPLICATE = "legs.duplicate"
DONATIONS_COMPLETED = "donations.completed"
DONATIONS_EXPIRED = "donations.expired"
CORRELATION_CONFLICTS = "correlation.conflicts"
CORRELATION_ANOMALIES = "correlation.anomalies"
REWARDS_APPLIED = "rewards.applied"
NOTIFICATIONS_DISPATCHED = "notifications.dispatched"
NOTIFICATIONS_FAILED = "notifications.failed"
