"""tradesync.core.observability

Structured events for the resilience and sync layers.

Every event goes three places: the stdlib logger (with `extra=`), a counter
per event name, and a bounded in-memory tail that embedding hosts and tests
can inspect.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any

from tradesync.core.redaction import sanitize_for_log
from tradesync.core.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Counter:
    name: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return float(self._value)


class MetricsRegistry:
    """Event counters keyed by event name."""

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
            return {name: c.value for name, c in sorted(self._counters.items())}


@dataclass(frozen=True, slots=True)
class ObservedEvent:
    name: str
    ts: datetime
    level: int
    fields: dict[str, Any]


_LOGRECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_WARN_EVENTS = frozenset({"rate_limit_rejected", "reconstruction_anomaly", "provider_call_failed"})


class ObservabilitySink:
    """Structured event emission for circuit transitions, rate-limit rejections and anomalies."""

    def __init__(
        self,
        *,
        metrics: MetricsRegistry | None = None,
        log: logging.Logger | None = None,
        tail_size: int = 500,
    ) -> None:
        self.metrics = metrics or MetricsRegistry()
        self._log = log or logger
        self._lock = Lock()
        self._tail: deque[ObservedEvent] = deque(maxlen=int(tail_size))

    def emit(self, name: str, /, *, level: int | None = None, **fields: Any) -> ObservedEvent:
        lvl = level if level is not None else (logging.WARNING if name in _WARN_EVENTS else logging.INFO)
        clean = sanitize_for_log(fields)
        ev = ObservedEvent(name=name, ts=utc_now(), level=lvl, fields=clean)
        with self._lock:
            self._tail.append(ev)
        self.metrics.counter(name).inc()
        # LogRecord refuses extras that shadow its own attributes.
        extra = {(f"field_{k}" if k in _LOGRECORD_ATTRS else k): v for k, v in clean.items()}
        self._log.log(lvl, name, extra=extra)
        return ev

    def events(self, name: str | None = None) -> list[ObservedEvent]:
        with self._lock:
            items = list(self._tail)
        if name is None:
            return items
        return [e for e in items if e.name == name]

    def clear(self) -> None:
        with self._lock:
            self._tail.clear()
