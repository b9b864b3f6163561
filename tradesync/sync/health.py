"""tradesync.sync.health

Broker health from circuit statistics.

A provider is healthy at or above `success_rate_threshold`, degraded within
`degraded_margin` below it, and unhealthy under that or while its circuit is
open. Below `min_requests` there is not enough data and it reports healthy.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from typing import Any

from tradesync.core.config import MonitoringConfig
from tradesync.core.observability import ObservabilitySink
from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True, slots=True)
class BrokerHealth:
    provider: str
    status: HealthStatus
    success_rate: float
    total_requests: int
    circuit_state: str
    recommendation: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": str(self.status),
            "success_rate": self.success_rate,
            "total_requests": self.total_requests,
            "circuit_state": self.circuit_state,
            "recommendation": self.recommendation,
        }


def determine_health(stats: dict[str, Any], config: MonitoringConfig | None = None) -> BrokerHealth:
    """Classify one entry of `CircuitBreakerRegistry.snapshot()`."""

    cfg = config or MonitoringConfig()
    provider = str(stats["provider"])
    rate = float(stats.get("success_rate", 1.0))
    total = int(stats.get("total_requests", 0))
    state = str(stats.get("state", "CLOSED"))

    if state == "OPEN":
        status, advice = HealthStatus.UNHEALTHY, "circuit open, requests are being refused"
    elif total < cfg.min_requests:
        status, advice = HealthStatus.HEALTHY, f"monitoring ({total}/{cfg.min_requests} requests)"
    elif rate >= cfg.success_rate_threshold:
        status, advice = HealthStatus.HEALTHY, "no action needed"
    elif rate >= cfg.success_rate_threshold - cfg.degraded_margin:
        status, advice = HealthStatus.DEGRADED, "monitor closely, investigate recent failures"
    else:
        status, advice = HealthStatus.UNHEALTHY, "investigate and fix the integration"

    return BrokerHealth(
        provider=provider,
        status=status,
        success_rate=rate,
        total_requests=total,
        circuit_state=state,
        recommendation=advice,
    )


def health_report(
    breakers: CircuitBreakerRegistry,
    config: MonitoringConfig | None = None,
    *,
    providers: Iterable[str] | None = None,
) -> list[BrokerHealth]:
    """Health for every provider the registry has seen, or for ``providers``."""

    if providers is None:
        snap = breakers.snapshot()
    else:
        snap = {p: breakers.state(p).as_dict() for p in providers}
    return [determine_health(stats, config) for _, stats in sorted(snap.items())]


class AlertGate:
    """At most one alert per provider per cooldown; healthy never alerts."""

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        *,
        sink: ObservabilitySink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or MonitoringConfig()
        self._sink = sink
        self._clock = clock
        self._lock = Lock()
        self._last_alert: dict[str, float] = {}

    def should_alert(self, health: BrokerHealth) -> bool:
        if health.status is HealthStatus.HEALTHY:
            return False
        now = self._clock()
        with self._lock:
            last = self._last_alert.get(health.provider)
            if last is not None and now - last < self.config.alert_cooldown_s:
                return False
            self._last_alert[health.provider] = now
        if self._sink is not None:
            self._sink.emit("broker_health_alert", level=logging.WARNING, **health.as_dict())
        else:
            logger.warning("broker_health_alert", extra=health.as_dict())
        return True

    def reset(self, provider: str | None = None) -> None:
        with self._lock:
            if provider is None:
                self._last_alert.clear()
            else:
                self._last_alert.pop(provider, None)
