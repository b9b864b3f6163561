from __future__ import annotations

import pytest

from tradesync.core.config import Config
from tradesync.core.exceptions import AllProvidersFailedError, ApiError, AuthError, CircuitOpenError, RateLimitError
from tradesync.core.observability import ObservabilitySink
from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from tradesync.resilience.executor import ResilientExecutor
from tradesync.resilience.rate_limiter import RateLimitScope, SlidingWindowRateLimiter
from tradesync.resilience.retry import NO_RETRY
from tests.unit._helpers import FakeClock, SleepRecorder, fast_config


def _executor(cfg: Config, clock: FakeClock, sleeps: SleepRecorder, sink: ObservabilitySink | None = None):
    limiter = SlidingWindowRateLimiter(cfg, sink=sink, clock=clock)
    breakers = CircuitBreakerRegistry(cfg.circuit_breaker, sink=sink, clock=clock)
    return ResilientExecutor(cfg, limiter, breakers, sink=sink, sleep=sleeps)


def _sequence(*outcomes: object):
    calls = {"n": 0}
    queue = list(outcomes)

    async def fn() -> object:
        calls["n"] += 1
        item = queue.pop(0) if queue else "ok"
        if isinstance(item, BaseException):
            raise item
        return item

    return fn, calls


@pytest.mark.anyio
async def test_call_retries_through_breaker(clock: FakeClock, sleeps: SleepRecorder) -> None:
    ex = _executor(fast_config(), clock, sleeps)
    fn, calls = _sequence(ApiError("503", status_code=503), "done")

    res = await ex.call("alpaca", fn, user_id="u1")

    assert res.value == "done"
    assert res.provider == "alpaca"
    assert res.retries_attempted == 1
    assert calls["n"] == 2
    st = ex.breakers.state("alpaca")
    assert (st.total_failures, st.total_successes) == (1, 1)


@pytest.mark.anyio
async def test_call_consumes_per_user_and_global_scopes(clock: FakeClock, sleeps: SleepRecorder) -> None:
    ex = _executor(fast_config(), clock, sleeps)
    fn, _ = _sequence("ok")

    await ex.call("alpaca", fn, user_id="u1", cost=3)

    assert ex.limiter.usage(RateLimitScope("alpaca", "u1"))["requests_used"] == 1
    assert ex.limiter.usage(RateLimitScope("alpaca"))["cost_used"] == 3


@pytest.mark.anyio
async def test_local_rate_limit_is_retried_after_hint(clock: FakeClock, sleeps: SleepRecorder) -> None:
    cfg = fast_config(
        retry={"max_retries": 3, "initial_delay_s": 0.01, "max_delay_s": 2.0},
        rate_limits={"default": {"global_scope": {"requests_per_second": 1.0}}},
    )
    ex = _executor(cfg, clock, sleeps)
    fn, _ = _sequence("a", "b")

    await ex.call("alpaca", fn)
    res = await ex.call("alpaca", fn)

    # The limiter rejected once; the sleep advanced the fake clock past the window.
    assert res.value == "b"
    assert res.retries_attempted == 1
    assert sleeps.calls == [pytest.approx(1.0)]


@pytest.mark.anyio
async def test_rate_limit_error_surfaces_when_retries_disabled(clock: FakeClock, sleeps: SleepRecorder) -> None:
    cfg = fast_config(rate_limits={"default": {"global_scope": {"requests_per_second": 1.0}}})
    ex = _executor(cfg, clock, sleeps)
    fn, _ = _sequence("a")
    await ex.call("alpaca", fn, policy=NO_RETRY)

    with pytest.raises(RateLimitError):
        await ex.call("alpaca", fn, policy=NO_RETRY)


@pytest.mark.anyio
async def test_fallback_uses_secondary_when_primary_fails(
    clock: FakeClock, sleeps: SleepRecorder, sink: ObservabilitySink
) -> None:
    ex = _executor(fast_config(), clock, sleeps, sink)
    primary, p_calls = _sequence(*[ApiError("down", status_code=500)] * 10)
    secondary, _ = _sequence("from-openai")

    res = await ex.call_with_fallback(["gemini", "openai"], {"gemini": primary, "openai": secondary})

    assert res.value == "from-openai"
    assert res.primary_provider == "gemini"
    assert res.actual_provider == "openai"
    assert res.fallback_used is True
    assert res.retries_attempted == 3
    assert p_calls["n"] == 4
    assert set(res.health) == {"gemini", "openai"}
    assert sink.events("provider_call_failed")[0].fields["provider"] == "gemini"


@pytest.mark.anyio
async def test_fallback_skips_open_circuit(clock: FakeClock, sleeps: SleepRecorder) -> None:
    ex = _executor(fast_config(), clock, sleeps)
    for _ in range(ex.config.circuit_breaker.failure_threshold):
        ex.breakers.record_failure("gemini", ApiError("x", status_code=500))
    assert ex.breakers.state("gemini").state is CircuitState.OPEN

    primary, p_calls = _sequence("never")
    secondary, _ = _sequence("ok")
    res = await ex.call_with_fallback(["gemini", "openai"], {"gemini": primary, "openai": secondary})

    assert p_calls["n"] == 0
    assert res.actual_provider == "openai"


@pytest.mark.anyio
async def test_all_providers_failed_names_each(clock: FakeClock, sleeps: SleepRecorder) -> None:
    ex = _executor(fast_config(), clock, sleeps)
    a, _ = _sequence(AuthError("bad gemini key"))
    b, _ = _sequence(ApiError("bad request", status_code=400))

    with pytest.raises(AllProvidersFailedError) as ei:
        await ex.call_with_fallback(["gemini", "openai"], {"gemini": a, "openai": b})

    assert set(ei.value.errors) == {"gemini", "openai"}
    assert isinstance(ei.value.errors["gemini"], AuthError)
    assert "gemini" in str(ei.value) and "openai" in str(ei.value)


@pytest.mark.anyio
async def test_all_circuits_open_raises_without_calls(clock: FakeClock, sleeps: SleepRecorder) -> None:
    ex = _executor(fast_config(), clock, sleeps)
    for name in ("gemini", "openai"):
        for _ in range(ex.config.circuit_breaker.failure_threshold):
            ex.breakers.record_failure(name, ApiError("x", status_code=500))

    fn, calls = _sequence("x")
    with pytest.raises(AllProvidersFailedError) as ei:
        await ex.call_with_fallback(["gemini", "openai"], {"gemini": fn, "openai": fn})

    assert calls["n"] == 0
    assert all(isinstance(e, CircuitOpenError) for e in ei.value.errors.values())


@pytest.mark.anyio
async def test_unwrapped_fallback_reads_retry_count_from_value(clock: FakeClock, sleeps: SleepRecorder) -> None:
    class Reply:
        retries_attempted = 2

    ex = _executor(fast_config(), clock, sleeps)

    async def fn() -> Reply:
        return Reply()

    res = await ex.call_with_fallback(["openai"], {"openai": fn}, wrap=False)

    assert res.retries_attempted == 2
    assert res.fallback_used is False
    assert ex.breakers.state("openai").total_requests == 0
