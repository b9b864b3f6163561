from __future__ import annotations

import pytest

from tradesync.core.config import RetryConfig
from tradesync.core.exceptions import (
    ApiError,
    AuthError,
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitError,
    ReconstructionAnomaly,
)
from tradesync.resilience.retry import NO_RETRY, RetryPolicy, is_retryable, retry_async
from tests.unit._helpers import SleepRecorder


def _flaky(errors: list[BaseException], value: str = "ok"):
    calls = {"n": 0}

    async def fn() -> str:
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return value

    return fn, calls


def test_backoff_delay_is_exponential_and_capped() -> None:
    p = RetryPolicy(max_retries=5, initial_delay_s=1.0, max_delay_s=10.0, backoff_multiplier=2.0)
    assert [p.backoff_delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_rate_limit_hint_is_honoured_but_capped() -> None:
    p = RetryPolicy(initial_delay_s=1.0, max_delay_s=10.0)
    assert p.delay_for(0, RateLimitError("x", retry_after_seconds=3.5)) == 3.5
    assert p.delay_for(0, RateLimitError("x", retry_after_seconds=120)) == 10.0
    assert p.delay_for(2, RateLimitError("x")) == 4.0


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RateLimitError("429"), True),
        (ApiError("boom", status_code=503), True),
        (ApiError("slow down", status_code=429), True),
        (ApiError("reset", status_code=None), True),
        (ProviderTimeoutError("t"), True),
        (ApiError("bad request", status_code=400), False),
        (ApiError("not found", status_code=404), False),
        (AuthError("nope"), False),
        (CircuitOpenError("open"), False),
        (ReconstructionAnomaly("invalid_fill", "x"), False),
        (ValueError("bug"), False),
    ],
)
def test_retryability_taxonomy(error: BaseException, expected: bool) -> None:
    assert is_retryable(error) is expected


@pytest.mark.anyio
async def test_retries_transient_errors_then_succeeds() -> None:
    sleeps = SleepRecorder()
    fn, calls = _flaky([ApiError("503", status_code=503), ApiError("502", status_code=502)])
    policy = RetryPolicy(max_retries=3, initial_delay_s=1.0, max_delay_s=10.0, backoff_multiplier=2.0)

    res = await retry_async(fn, policy, sleep=sleeps)

    assert res.value == "ok"
    assert res.retries_attempted == 2
    assert calls["n"] == 3
    assert sleeps.calls == [1.0, 2.0]


@pytest.mark.anyio
async def test_exhaustion_reraises_original_error() -> None:
    sleeps = SleepRecorder()
    last = ApiError("still down", status_code=500)
    fn, calls = _flaky([ApiError("a", status_code=500), ApiError("b", status_code=500), last])
    policy = RetryPolicy(max_retries=2, initial_delay_s=0.5, max_delay_s=10.0)

    with pytest.raises(ApiError) as ei:
        await retry_async(fn, policy, sleep=sleeps)

    assert ei.value is last
    assert ei.value.retries_attempted == 2  # type: ignore[attr-defined]
    assert calls["n"] == 3
    assert sleeps.calls == [0.5, 1.0]


@pytest.mark.anyio
async def test_non_retryable_error_is_not_retried() -> None:
    sleeps = SleepRecorder()
    fn, calls = _flaky([AuthError("bad key")])

    with pytest.raises(AuthError):
        await retry_async(fn, RetryPolicy(max_retries=5), sleep=sleeps)

    assert calls["n"] == 1
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_disabled_policy_makes_exactly_one_attempt() -> None:
    sleeps = SleepRecorder()
    fn, calls = _flaky([ApiError("503", status_code=503)])

    with pytest.raises(ApiError):
        await retry_async(fn, NO_RETRY, sleep=sleeps)

    assert calls["n"] == 1
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_rate_limit_retry_waits_for_hint() -> None:
    sleeps = SleepRecorder()
    fn, _ = _flaky([RateLimitError("slow", retry_after_seconds=2.5)])

    res = await retry_async(fn, RetryPolicy(max_retries=1, initial_delay_s=0.1, max_delay_s=5.0), sleep=sleeps)

    assert res.value == "ok"
    assert sleeps.calls == [2.5]


def test_from_config_respects_enabled_override() -> None:
    cfg = RetryConfig(max_retries=4, initial_delay_s=2.0, max_delay_s=30.0)
    assert RetryPolicy.from_config(cfg).enabled is True
    assert RetryPolicy.from_config(cfg, enabled=False).enabled is False
    assert RetryPolicy.from_config(cfg).max_retries == 4
