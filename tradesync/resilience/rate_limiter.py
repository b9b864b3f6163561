"""tradesync.resilience.rate_limiter

Per-provider admission control.

Two counters per scope:
1. Requests in the current 1-second window
2. Cost (AI tokens, or 1 per call for brokers) in the current 60-second window

Both windows reset when their boundary is crossed. `admit` never blocks or
queues; backoff belongs to the retry layer.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from tradesync.core.config import Config, ScopeLimit
from tradesync.core.exceptions import RateLimitError
from tradesync.core.observability import ObservabilitySink

logger = logging.getLogger(__name__)

REQUEST_WINDOW_S = 1.0
COST_WINDOW_S = 60.0


@dataclass(frozen=True, slots=True)
class RateLimitScope:
    provider: str
    user_id: str | None = None

    @property
    def key(self) -> str:
        if self.user_id is None:
            return f"{self.provider}:global"
        return f"{self.provider}:user:{self.user_id}"


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    reason: str = ""
    retry_after_seconds: float = 0.0
    limit_type: str = ""  # requests|cost


@dataclass(slots=True)
class RateLimitWindow:
    scope: str
    window_started_at: float
    requests: int = 0
    cost_started_at: float = 0.0
    cost: float = 0.0

    def roll(self, now: float) -> None:
        if now - self.window_started_at >= REQUEST_WINDOW_S:
            self.window_started_at = now
            self.requests = 0
        if now - self.cost_started_at >= COST_WINDOW_S:
            self.cost_started_at = now
            self.cost = 0.0


class SlidingWindowRateLimiter:
    """In-memory limiter keyed by `RateLimitScope.key`.

    Ceilings are looked up per provider in `Config.rate_limits`; a scope with
    a user id uses the `per_user` ceiling, otherwise `global_scope`.
    """

    def __init__(
        self,
        config: Config,
        *,
        sink: ObservabilitySink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._sink = sink
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, RateLimitWindow] = {}

    def limits_for(self, scope: RateLimitScope) -> ScopeLimit:
        cfg = self._config.rate_limit_for(scope.provider)
        return cfg.per_user if scope.user_id is not None else cfg.global_scope

    def admit(self, scope: RateLimitScope, estimated_cost: float = 1.0, *, now: float | None = None) -> RateLimitResult:
        """Atomically increment-or-reject. Rejected calls consume nothing."""

        n = self._clock() if now is None else float(now)
        limit = self.limits_for(scope)
        max_requests = max(1, math.floor(limit.requests_per_second * REQUEST_WINDOW_S))
        cost = max(0.0, float(estimated_cost))

        with self._lock:
            w = self._windows.get(scope.key)
            if w is None:
                w = RateLimitWindow(scope=scope.key, window_started_at=n, cost_started_at=n)
                self._windows[scope.key] = w
            w.roll(n)

            result: RateLimitResult | None = None
            if w.requests + 1 > max_requests:
                result = RateLimitResult(
                    allowed=False,
                    reason=f"{scope.key}: {max_requests} requests/second exceeded",
                    retry_after_seconds=max(0.0, w.window_started_at + REQUEST_WINDOW_S - n),
                    limit_type="requests",
                )
            elif limit.cost_per_minute is not None and w.cost + cost > float(limit.cost_per_minute):
                result = RateLimitResult(
                    allowed=False,
                    reason=f"{scope.key}: {limit.cost_per_minute:g} cost/minute exceeded",
                    retry_after_seconds=max(0.0, w.cost_started_at + COST_WINDOW_S - n),
                    limit_type="cost",
                )
            else:
                w.requests += 1
                w.cost += cost
                return RateLimitResult(allowed=True)

        if self._sink is not None:
            self._sink.emit(
                "rate_limit_rejected",
                provider=scope.provider,
                scope=scope.key,
                limit_type=result.limit_type,
                retry_after_seconds=round(result.retry_after_seconds, 3),
            )
        return result

    def require(self, scope: RateLimitScope, estimated_cost: float = 1.0, *, now: float | None = None) -> None:
        """Admit or raise `RateLimitError` carrying the retry-after hint."""

        res = self.admit(scope, estimated_cost, now=now)
        if not res.allowed:
            raise RateLimitError(
                res.reason,
                retry_after_seconds=res.retry_after_seconds,
                limit_type=res.limit_type,
                provider=scope.provider,
            )

    def reset(self, scope: RateLimitScope | None = None) -> None:
        with self._lock:
            if scope is None:
                self._windows.clear()
            else:
                self._windows.pop(scope.key, None)

    def usage(self, scope: RateLimitScope, *, now: float | None = None) -> dict[str, Any]:
        """Return current counters and ceilings for a scope."""

        n = self._clock() if now is None else float(now)
        limit = self.limits_for(scope)
        with self._lock:
            w = self._windows.get(scope.key)
            if w is not None:
                w.roll(n)
            return {
                "scope": scope.key,
                "requests_used": w.requests if w else 0,
                "requests_limit": max(1, math.floor(limit.requests_per_second * REQUEST_WINDOW_S)),
                "cost_used": w.cost if w else 0.0,
                "cost_limit": limit.cost_per_minute,
            }
