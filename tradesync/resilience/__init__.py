"""tradesync.resilience

Rate limiting, retries and circuit breakers shared by every external caller.
"""

from .circuit_breaker import CircuitBreakerRegistry, CircuitState
from .executor import CallResult, FallbackResult, ResilientExecutor
from .rate_limiter import RateLimitScope, SlidingWindowRateLimiter
from .retry import RetryPolicy, retry_async

__all__ = [
    "CallResult",
    "CircuitBreakerRegistry",
    "CircuitState",
    "FallbackResult",
    "RateLimitScope",
    "ResilientExecutor",
    "RetryPolicy",
    "SlidingWindowRateLimiter",
    "retry_async",
]
