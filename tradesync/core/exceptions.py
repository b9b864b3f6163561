"""tradesync.core.exceptions

Errors are part of the interface.

Provider errors carry enough structure for the resilience layer to decide
whether to retry, trip a breaker, or surface to the user.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class TradeSyncError(Exception):
    """Base exception for tradesync."""


class ConfigError(TradeSyncError):
    """Configuration is missing, invalid, or inconsistent."""


class ProviderError(TradeSyncError):
    """Failure talking to an external provider (broker or AI vendor)."""

    retryable: bool = False

    def __init__(self, message: str, *, provider: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.details = details


class AuthError(ProviderError):
    """Credentials are wrong or expired. Retrying will not help."""


class RateLimitError(ProviderError):
    """Rate limit hit, locally or upstream. Carries a retry-after hint."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        limit_type: str = "requests",
        provider: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after_seconds = retry_after_seconds
        self.limit_type = limit_type


class ApiError(ProviderError):
    """Vendor returned an error response, or the transport failed.

    ``status_code`` is None for transport-level failures (connection reset,
    DNS). Retryable iff 5xx, 429, or transport-level.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, provider=provider, details=details)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class CircuitOpenError(ProviderError):
    """Circuit is open. No network call was attempted."""


class ProviderTimeoutError(ProviderError):
    """The wrapped call did not finish within its hard timeout."""

    retryable = True


class AllProvidersFailedError(TradeSyncError):
    """Every provider in a fallback chain was exhausted."""

    def __init__(self, errors: dict[str, BaseException]) -> None:
        self.errors = dict(errors)
        names = ", ".join(self.errors) or "<none>"
        last = next(reversed(self.errors.values()), None)
        detail = f"{type(last).__name__}: {last}" if last is not None else "no provider available"
        super().__init__(f"All providers failed ({names}). Last error: {detail}")


class ReconstructionAnomaly(TradeSyncError):
    """A fill sequence that does not match cleanly. Reported, never guessed at."""

    def __init__(
        self,
        kind: str,
        detail: str,
        *,
        severity: str = "error",
        account_id: str | None = None,
        symbol: str | None = None,
        fill_id: str | None = None,
    ) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail
        self.severity = severity
        self.account_id = account_id
        self.symbol = symbol
        self.fill_id = fill_id

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "detail": self.detail,
            "severity": self.severity,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "fill_id": self.fill_id,
        }


class StoreError(TradeSyncError):
    """Persisted store failures: schema, IO, integrity."""


class SignatureConflictError(StoreError):
    """A trade with this (user_id, trade_signature) already exists."""


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    type: str  # auth|rate_limit|api|network|timeout|circuit_open|anomaly|unknown
    severity: str  # critical|error|warning
    retryable: bool
    user_message: str


def classify_error(error: BaseException) -> ErrorClassification:
    """Map an exception to something a sync report can show a user."""

    if isinstance(error, AuthError):
        return ErrorClassification("auth", "critical", False, "Authentication failed. Check your API credentials.")
    if isinstance(error, RateLimitError):
        wait = int(error.retry_after_seconds) if error.retry_after_seconds else 60
        return ErrorClassification("rate_limit", "warning", True, f"Rate limit exceeded. Try again in {wait} seconds.")
    if isinstance(error, CircuitOpenError):
        return ErrorClassification("circuit_open", "warning", False, "Provider is temporarily unavailable.")
    if isinstance(error, ProviderTimeoutError):
        return ErrorClassification("timeout", "error", True, "Operation timed out. Please try again.")
    if isinstance(error, ApiError):
        if error.status_code is None:
            return ErrorClassification("network", "error", True, "Network error. Please check your connection.")
        return ErrorClassification("api", "error", error.retryable, "Broker API error. This may be temporary.")
    if isinstance(error, ReconstructionAnomaly):
        return ErrorClassification("anomaly", error.severity, False, f"Trade history could not be matched: {error.detail}")
    return ErrorClassification("unknown", "error", False, "An unexpected error occurred.")
