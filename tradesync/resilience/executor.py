"""tradesync.resilience.executor

One call = retry( limiter.require(per-user, global) -> breaker.call(fn) ).

Every outbound request a provider adapter makes goes through here, so rate
limits, retries and breakers compose the same way for brokers and AI vendors.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from tradesync.core.config import Config
from tradesync.core.exceptions import AllProvidersFailedError, CircuitOpenError
from tradesync.core.observability import ObservabilitySink
from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry
from tradesync.resilience.rate_limiter import RateLimitScope, SlidingWindowRateLimiter
from tradesync.resilience.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CallResult(Generic[T]):
    value: T
    provider: str
    retries_attempted: int
    latency_ms: int


@dataclass(frozen=True, slots=True)
class FallbackResult(Generic[T]):
    value: T
    primary_provider: str
    actual_provider: str
    fallback_used: bool
    retries_attempted: int
    health: dict[str, dict[str, Any]] = field(default_factory=dict)


class ResilientExecutor:
    def __init__(
        self,
        config: Config,
        limiter: SlidingWindowRateLimiter,
        breakers: CircuitBreakerRegistry,
        *,
        sink: ObservabilitySink | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.limiter = limiter
        self.breakers = breakers
        self._sink = sink
        self._sleep = sleep

    def policy_for(self, provider: str) -> RetryPolicy:
        return RetryPolicy.from_config(self.config.retry_for(provider))

    async def call(
        self,
        provider: str,
        fn: Callable[[], Awaitable[T]],
        *,
        user_id: str | None = None,
        cost: float = 1.0,
        policy: RetryPolicy | None = None,
        timeout_s: float | None = None,
    ) -> CallResult[T]:
        pol = policy or self.policy_for(provider)
        timeout = timeout_s if timeout_s is not None else self.config.timeout_for(provider)

        async def attempt() -> T:
            if user_id is not None:
                self.limiter.require(RateLimitScope(provider, user_id), cost)
            self.limiter.require(RateLimitScope(provider), cost)
            return await self.breakers.call(provider, fn, timeout_s=timeout)

        started = time.perf_counter()
        res = await retry_async(attempt, pol, sleep=self._sleep, label=provider)
        latency_ms = int((time.perf_counter() - started) * 1000)
        return CallResult(value=res.value, provider=provider, retries_attempted=res.retries_attempted, latency_ms=latency_ms)

    async def call_with_fallback(
        self,
        providers: Sequence[str],
        fn_by_provider: Mapping[str, Callable[[], Awaitable[T]]],
        *,
        user_id: str | None = None,
        cost: float = 1.0,
        policy_by_provider: Mapping[str, RetryPolicy] | None = None,
        wrap: bool = True,
    ) -> FallbackResult[T]:
        """Try providers in order; skip open circuits; aggregate every failure.

        ``wrap=False`` is for functions that already run through `call` per
        request (adapters built on `ProviderHttpClient`); they are invoked as-is
        and report retries through a ``retries_attempted`` attribute.
        """

        if not providers:
            raise AllProvidersFailedError({})
        primary = providers[0]
        errors: dict[str, BaseException] = {}
        retries = 0

        for name in providers:
            if self.breakers.is_open(name):
                errors[name] = CircuitOpenError(f"Circuit open for {name}", provider=name)
                logger.info("fallback_skipped_open_circuit", extra={"provider": name})
                continue
            policy = (policy_by_provider or {}).get(name)
            try:
                if wrap:
                    res = await self.call(name, fn_by_provider[name], user_id=user_id, cost=cost, policy=policy)
                    value, used = res.value, res.retries_attempted
                else:
                    value = await fn_by_provider[name]()
                    used = int(getattr(value, "retries_attempted", 0))
            except Exception as e:  # noqa: BLE001 - fallback boundary
                retries += int(getattr(e, "retries_attempted", 0))
                errors[name] = e
                if self._sink is not None:
                    self._sink.emit("provider_call_failed", provider=name, error_type=type(e).__name__, error=str(e))
                continue
            retries += used
            return FallbackResult(
                value=value,
                primary_provider=primary,
                actual_provider=name,
                fallback_used=name != primary,
                retries_attempted=retries,
                health={p: self.breakers.state(p).as_dict() for p in providers},
            )

        raise AllProvidersFailedError(errors)
