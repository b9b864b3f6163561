"""tradesync.resilience.circuit_breaker

Per-provider circuit breakers.

CLOSED -> OPEN after `failure_threshold` consecutive failures.
OPEN rejects locally (no network) until `reset_timeout_s` has elapsed since
the last failure; the next call then moves to HALF_OPEN and goes through.
HALF_OPEN admits `half_open_max_calls` trial calls at a time;
`success_threshold` consecutive successes close the circuit, any failure
re-opens it.

Errors that are the caller's fault (bad credentials, 4xx) prove the provider
is reachable: they count toward totals but not toward tripping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock
from typing import Any, TypeVar

from tradesync.core.config import CircuitBreakerConfig
from tradesync.core.exceptions import ApiError, AuthError, CircuitOpenError, ProviderTimeoutError
from tradesync.core.observability import ObservabilitySink

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True)
class ProviderCircuitState:
    provider: str
    latency_window: int = 100
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_at: float | None = None
    last_success_at: float | None = None
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    rejected: int = 0
    half_open_in_flight: int = 0
    rolling_latencies: deque[float] = field(init=False)

    def __post_init__(self) -> None:
        self.rolling_latencies = deque(maxlen=self.latency_window)

    @property
    def average_latency_ms(self) -> float:
        if not self.rolling_latencies:
            return 0.0
        return sum(self.rolling_latencies) / len(self.rolling_latencies)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.total_successes / self.total_requests

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "state": str(self.state),
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "rejected": self.rejected,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "success_rate": round(self.success_rate, 4),
        }


def counts_toward_trip(error: BaseException) -> bool:
    if isinstance(error, AuthError):
        return False
    if isinstance(error, ApiError) and not error.retryable:
        return False
    return True


class CircuitBreakerRegistry:
    """Process-lifetime breaker state, one entry per provider, created lazily."""

    def __init__(
        self,
        config: CircuitBreakerConfig,
        *,
        sink: ObservabilitySink | None = None,
        clock: Callable[[], float] = time.monotonic,
        bypass: Iterable[str] = (),
    ) -> None:
        self.config = config
        self._sink = sink
        self._clock = clock
        self._bypass = frozenset(bypass)
        self._lock = Lock()
        self._circuits: dict[str, ProviderCircuitState] = {}

    def enabled_for(self, provider: str) -> bool:
        """False when breakers are off globally or for this provider (stats are still kept)."""

        return bool(self.config.enabled) and provider not in self._bypass

    def _get(self, provider: str) -> ProviderCircuitState:
        c = self._circuits.get(provider)
        if c is None:
            c = ProviderCircuitState(provider=provider, latency_window=self.config.latency_window)
            self._circuits[provider] = c
        return c

    def state(self, provider: str) -> ProviderCircuitState:
        with self._lock:
            return self._get(provider)

    def is_open(self, provider: str, *, now: float | None = None) -> bool:
        """True when a call right now would be rejected without a network attempt."""

        if not self.enabled_for(provider):
            return False
        n = self._clock() if now is None else float(now)
        with self._lock:
            c = self._get(provider)
            if c.state is CircuitState.OPEN:
                return c.last_failure_at is not None and n - c.last_failure_at < self.config.reset_timeout_s
            if c.state is CircuitState.HALF_OPEN:
                return c.half_open_in_flight >= self.config.half_open_max_calls
            return False

    def _transition(self, c: ProviderCircuitState, to: CircuitState, events: list[dict[str, Any]]) -> None:
        if c.state is to:
            return
        events.append({"provider": c.provider, "from_state": str(c.state), "to_state": str(to)})
        c.state = to
        if to is CircuitState.CLOSED:
            c.consecutive_failures = 0
            c.consecutive_successes = 0
            c.half_open_in_flight = 0
        elif to is CircuitState.HALF_OPEN:
            c.consecutive_successes = 0
            c.half_open_in_flight = 0
        elif to is CircuitState.OPEN:
            c.consecutive_successes = 0
            c.half_open_in_flight = 0

    def _publish(self, events: list[dict[str, Any]]) -> None:
        for ev in events:
            if self._sink is not None:
                self._sink.emit("circuit_state_changed", level=logging.WARNING, **ev)
            else:
                logger.warning("circuit_state_changed", extra=ev)

    def before_call(self, provider: str) -> None:
        """Admit a call or raise `CircuitOpenError`."""

        if not self.enabled_for(provider):
            return
        n = self._clock()
        events: list[dict[str, Any]] = []
        try:
            with self._lock:
                c = self._get(provider)
                if c.state is CircuitState.OPEN:
                    elapsed = n - (c.last_failure_at or n)
                    if elapsed < self.config.reset_timeout_s:
                        c.rejected += 1
                        wait = self.config.reset_timeout_s - elapsed
                        raise CircuitOpenError(
                            f"Circuit open for {provider}; retry in {wait:.1f}s",
                            provider=provider,
                        )
                    self._transition(c, CircuitState.HALF_OPEN, events)
                if c.state is CircuitState.HALF_OPEN:
                    if c.half_open_in_flight >= self.config.half_open_max_calls:
                        c.rejected += 1
                        raise CircuitOpenError(
                            f"Circuit half-open for {provider}; trial call already in flight",
                            provider=provider,
                        )
                    c.half_open_in_flight += 1
        finally:
            self._publish(events)

    def record_success(self, provider: str, latency_ms: float) -> None:
        enabled = self.enabled_for(provider)
        n = self._clock()
        events: list[dict[str, Any]] = []
        with self._lock:
            c = self._get(provider)
            c.total_requests += 1
            c.total_successes += 1
            c.last_success_at = n
            c.rolling_latencies.append(float(latency_ms))
            c.consecutive_failures = 0
            if enabled and c.state is CircuitState.HALF_OPEN:
                c.half_open_in_flight = max(0, c.half_open_in_flight - 1)
                c.consecutive_successes += 1
                if c.consecutive_successes >= self.config.success_threshold:
                    self._transition(c, CircuitState.CLOSED, events)
            else:
                c.consecutive_successes += 1
        self._publish(events)

    def record_failure(self, provider: str, error: BaseException, latency_ms: float | None = None) -> None:
        enabled = self.enabled_for(provider)
        n = self._clock()
        events: list[dict[str, Any]] = []
        with self._lock:
            c = self._get(provider)
            c.total_requests += 1
            c.total_failures += 1
            if latency_ms is not None:
                c.rolling_latencies.append(float(latency_ms))
            if enabled and c.state is CircuitState.HALF_OPEN:
                c.half_open_in_flight = max(0, c.half_open_in_flight - 1)
            if counts_toward_trip(error):
                c.consecutive_failures += 1
                c.consecutive_successes = 0
                c.last_failure_at = n
                if enabled:
                    if c.state is CircuitState.HALF_OPEN:
                        self._transition(c, CircuitState.OPEN, events)
                    elif c.consecutive_failures >= self.config.failure_threshold:
                        self._transition(c, CircuitState.OPEN, events)
        self._publish(events)

    async def call(
        self,
        provider: str,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout_s: float | None = None,
    ) -> T:
        """Run ``fn`` under the provider's breaker with a hard timeout."""

        self.before_call(provider)
        timeout = float(timeout_s if timeout_s is not None else self.config.timeout_s)
        started = self._clock()
        try:
            value = await asyncio.wait_for(fn(), timeout=timeout)
        except TimeoutError as e:
            err = ProviderTimeoutError(f"{provider} call timed out after {timeout:g}s", provider=provider)
            self.record_failure(provider, err, (self._clock() - started) * 1000.0)
            raise err from e
        except asyncio.CancelledError:
            with self._lock:
                c = self._get(provider)
                if c.state is CircuitState.HALF_OPEN:
                    c.half_open_in_flight = max(0, c.half_open_in_flight - 1)
            raise
        except Exception as e:
            self.record_failure(provider, e, (self._clock() - started) * 1000.0)
            raise
        self.record_success(provider, (self._clock() - started) * 1000.0)
        return value

    def reset(self, provider: str | None = None) -> None:
        """Administrative reset; forgets state and stats."""

        with self._lock:
            if provider is None:
                self._circuits.clear()
            else:
                self._circuits.pop(provider, None)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: c.as_dict() for name, c in sorted(self._circuits.items())}
