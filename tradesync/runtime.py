"""tradesync.runtime

Wiring. The limiter and breaker registry are process-lifetime shared state;
build them once here and pass the runtime by reference.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from tradesync.core.config import Config
from tradesync.core.observability import ObservabilitySink
from tradesync.journal.merge import MergeEngine
from tradesync.journal.store import SqliteTradeStore
from tradesync.providers import ProviderContext, ProviderHttpClient, list_providers
from tradesync.reconstruction.matcher import PositionMatcher
from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry
from tradesync.resilience.executor import ResilientExecutor
from tradesync.resilience.rate_limiter import SlidingWindowRateLimiter


@dataclass
class Runtime:
    config: Config
    sink: ObservabilitySink
    limiter: SlidingWindowRateLimiter
    breakers: CircuitBreakerRegistry
    executor: ResilientExecutor
    http: ProviderHttpClient
    matcher: PositionMatcher
    ctx: ProviderContext
    store: SqliteTradeStore
    merge: MergeEngine

    async def aclose(self) -> None:
        await self.http.aclose()
        self.store.close()

    async def __aenter__(self) -> Runtime:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


def build_runtime(
    config: Config,
    *,
    db_path: Path | str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    sink: ObservabilitySink | None = None,
    strict: bool = False,
) -> Runtime:
    sink = sink or ObservabilitySink()
    limiter = SlidingWindowRateLimiter(config, sink=sink, clock=clock)
    bypass = () if config.ai.enable_circuit_breaker else list_providers(kind="ai")
    breakers = CircuitBreakerRegistry(config.circuit_breaker, sink=sink, clock=clock, bypass=bypass)
    executor = ResilientExecutor(config, limiter, breakers, sink=sink, sleep=sleep)
    http = ProviderHttpClient(executor, transport=transport, timeout_s=config.circuit_breaker.timeout_s)
    matcher = PositionMatcher(strict=strict, sink=sink)
    ctx = ProviderContext(config=config, http=http, matcher=matcher, sink=sink)

    store = SqliteTradeStore(db_path if db_path is not None else config.store.db_path)
    merge = MergeEngine(store, config.merge, sink=sink)
    return Runtime(
        config=config,
        sink=sink,
        limiter=limiter,
        breakers=breakers,
        executor=executor,
        http=http,
        matcher=matcher,
        ctx=ctx,
        store=store,
        merge=merge,
    )
