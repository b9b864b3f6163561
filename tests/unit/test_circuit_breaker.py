from __future__ import annotations

import asyncio

import pytest

from tradesync.core.config import CircuitBreakerConfig
from tradesync.core.exceptions import ApiError, AuthError, CircuitOpenError, ProviderTimeoutError
from tradesync.core.observability import ObservabilitySink
from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from tests.unit._helpers import FakeClock


def _registry(clock: FakeClock, sink: ObservabilitySink | None = None, **cfg: object) -> CircuitBreakerRegistry:
    base = {"failure_threshold": 3, "success_threshold": 2, "reset_timeout_s": 60.0, "timeout_s": 1.0}
    base.update(cfg)
    return CircuitBreakerRegistry(CircuitBreakerConfig(**base), sink=sink, clock=clock)


async def _ok() -> str:
    return "ok"


async def _boom() -> str:
    raise ApiError("down", status_code=503)


async def _trip(reg: CircuitBreakerRegistry, provider: str, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ApiError):
            await reg.call(provider, _boom)


@pytest.mark.anyio
async def test_opens_after_failure_threshold(clock: FakeClock, sink: ObservabilitySink) -> None:
    reg = _registry(clock, sink)
    await _trip(reg, "alpaca", 2)
    assert reg.state("alpaca").state is CircuitState.CLOSED

    await _trip(reg, "alpaca", 1)
    assert reg.state("alpaca").state is CircuitState.OPEN
    assert reg.is_open("alpaca") is True

    ev = sink.events("circuit_state_changed")
    assert [(e.fields["from_state"], e.fields["to_state"]) for e in ev] == [("CLOSED", "OPEN")]


@pytest.mark.anyio
async def test_open_circuit_rejects_without_calling(clock: FakeClock) -> None:
    reg = _registry(clock)
    await _trip(reg, "alpaca", 3)
    called = {"n": 0}

    async def fn() -> str:
        called["n"] += 1
        return "x"

    with pytest.raises(CircuitOpenError):
        await reg.call("alpaca", fn)
    assert called["n"] == 0
    assert reg.state("alpaca").rejected == 1


@pytest.mark.anyio
async def test_half_open_after_reset_timeout_then_closes(clock: FakeClock, sink: ObservabilitySink) -> None:
    reg = _registry(clock, sink)
    await _trip(reg, "alpaca", 3)

    clock.advance(59.9)
    assert reg.is_open("alpaca") is True
    clock.advance(0.2)
    assert reg.is_open("alpaca") is False

    assert await reg.call("alpaca", _ok) == "ok"
    assert reg.state("alpaca").state is CircuitState.HALF_OPEN
    assert await reg.call("alpaca", _ok) == "ok"
    assert reg.state("alpaca").state is CircuitState.CLOSED

    states = [e.fields["to_state"] for e in sink.events("circuit_state_changed")]
    assert states == ["OPEN", "HALF_OPEN", "CLOSED"]


@pytest.mark.anyio
async def test_half_open_failure_reopens(clock: FakeClock) -> None:
    reg = _registry(clock)
    await _trip(reg, "alpaca", 3)
    clock.advance(61)

    await _trip(reg, "alpaca", 1)
    assert reg.state("alpaca").state is CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await reg.call("alpaca", _ok)


@pytest.mark.anyio
async def test_half_open_admits_limited_trial_calls(clock: FakeClock) -> None:
    reg = _registry(clock, half_open_max_calls=1)
    await _trip(reg, "alpaca", 3)
    clock.advance(61)

    gate = asyncio.Event()

    async def slow() -> str:
        await gate.wait()
        return "late"

    trial = asyncio.create_task(reg.call("alpaca", slow))
    await asyncio.sleep(0)
    with pytest.raises(CircuitOpenError):
        await reg.call("alpaca", _ok)
    gate.set()
    assert await trial == "late"


@pytest.mark.anyio
async def test_timeout_counts_as_failure(clock: FakeClock) -> None:
    reg = _registry(clock, failure_threshold=1)

    async def hang() -> str:
        await asyncio.sleep(10)
        return "never"

    with pytest.raises(ProviderTimeoutError):
        await reg.call("oanda", hang, timeout_s=0.01)
    assert reg.state("oanda").state is CircuitState.OPEN
    assert reg.state("oanda").total_failures == 1


@pytest.mark.anyio
async def test_caller_errors_do_not_trip(clock: FakeClock) -> None:
    reg = _registry(clock, failure_threshold=2)

    async def auth() -> str:
        raise AuthError("bad key")

    async def bad_request() -> str:
        raise ApiError("bad", status_code=400)

    for fn in (auth, bad_request, auth, bad_request):
        with pytest.raises((AuthError, ApiError)):
            await reg.call("tradovate", fn)

    st = reg.state("tradovate")
    assert st.state is CircuitState.CLOSED
    assert st.consecutive_failures == 0
    assert st.total_failures == 4


@pytest.mark.anyio
async def test_success_resets_consecutive_failures(clock: FakeClock) -> None:
    reg = _registry(clock)
    await _trip(reg, "alpaca", 2)
    await reg.call("alpaca", _ok)
    await _trip(reg, "alpaca", 2)
    assert reg.state("alpaca").state is CircuitState.CLOSED


@pytest.mark.anyio
async def test_disabled_breaker_passes_through_but_keeps_stats(clock: FakeClock) -> None:
    reg = _registry(clock, enabled=False, failure_threshold=1)
    await _trip(reg, "alpaca", 5)

    st = reg.state("alpaca")
    assert st.state is CircuitState.CLOSED
    assert st.total_failures == 5
    assert await reg.call("alpaca", _ok) == "ok"


@pytest.mark.anyio
async def test_bypassed_provider_never_opens(clock: FakeClock) -> None:
    reg = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock, bypass=["gemini"])
    await _trip(reg, "gemini", 3)
    await _trip(reg, "openai", 1)

    assert reg.is_open("gemini") is False
    assert reg.is_open("openai") is True


@pytest.mark.anyio
async def test_stats_and_reset(clock: FakeClock) -> None:
    reg = _registry(clock)
    await reg.call("alpaca", _ok)
    await _trip(reg, "alpaca", 1)

    snap = reg.snapshot()["alpaca"]
    assert snap["total_requests"] == 2
    assert snap["success_rate"] == 0.5

    reg.reset("alpaca")
    assert reg.snapshot() == {}
