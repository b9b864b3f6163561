"""tradesync.resilience.retry

Exponential backoff retry for async calls.

The error that caused a retry is the one re-raised on exhaustion, never a
generic wrapper.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from tradesync.core.config import RetryConfig
from tradesync.core.exceptions import (
    ApiError,
    AuthError,
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitError,
    ReconstructionAnomaly,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    backoff_multiplier: float = 2.0
    enabled: bool = True

    @classmethod
    def from_config(cls, cfg: RetryConfig, *, enabled: bool | None = None) -> RetryPolicy:
        return cls(
            max_retries=cfg.max_retries,
            initial_delay_s=cfg.initial_delay_s,
            max_delay_s=cfg.max_delay_s,
            backoff_multiplier=cfg.backoff_multiplier,
            enabled=cfg.enabled if enabled is None else (cfg.enabled and enabled),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` starts at 0)."""

        return float(min(self.max_delay_s, self.initial_delay_s * (self.backoff_multiplier**attempt)))

    def delay_for(self, attempt: int, error: BaseException) -> float:
        if isinstance(error, RateLimitError) and error.retry_after_seconds:
            return float(min(self.max_delay_s, max(0.0, error.retry_after_seconds)))
        return self.backoff_delay(attempt)


NO_RETRY = RetryPolicy(max_retries=0, enabled=False)


@dataclass(frozen=True, slots=True)
class RetryResult(Generic[T]):
    value: T
    retries_attempted: int


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, (AuthError, CircuitOpenError, ReconstructionAnomaly)):
        return False
    if isinstance(error, (RateLimitError, ProviderTimeoutError)):
        return True
    if isinstance(error, ApiError):
        return error.retryable
    return False


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "",
) -> RetryResult[T]:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or retries run out."""

    attempts_allowed = 1 + (policy.max_retries if policy.enabled else 0)
    attempt = 0
    while True:
        try:
            value = await fn()
        except Exception as e:
            if attempt + 1 >= attempts_allowed or not is_retryable(e):
                e.retries_attempted = attempt  # type: ignore[attr-defined]
                raise
            delay = policy.delay_for(attempt, e)
            logger.info(
                "retry_scheduled",
                extra={
                    "label": label,
                    "attempt": attempt + 1,
                    "max_retries": policy.max_retries,
                    "delay_s": round(delay, 3),
                    "error_type": type(e).__name__,
                },
            )
            await sleep(delay)
            attempt += 1
            continue
        return RetryResult(value=value, retries_attempted=attempt)
