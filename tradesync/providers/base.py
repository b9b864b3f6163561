"""tradesync.providers.base

Provider adapters translate a vendor's API into our types.

Broker adapters fetch orders/fills/transactions and hand back round-trip
trades; AI adapters turn a message list into text. Adapters are stateless:
environment and secrets travel in the credentials or the token, never on the
instance. Every network call goes through `ProviderHttpClient`, which routes
it through the rate limiter, retry policy and circuit breaker for the
adapter's name.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tradesync.core.config import Config, ProviderSettings
from tradesync.core.exceptions import AuthError, ReconstructionAnomaly
from tradesync.core.observability import ObservabilitySink
from tradesync.core.time import ensure_utc
from tradesync.core.types import (
    AIResponse,
    AuthResult,
    BrokerAccount,
    BrokerCredentials,
    ChatMessage,
    Fill,
    RoundTripTrade,
)
from tradesync.reconstruction.matcher import PositionMatcher, fill_sort_key
from tradesync.resilience.retry import RetryPolicy

if TYPE_CHECKING:
    from tradesync.providers.http import ProviderHttpClient


@dataclass(frozen=True, slots=True)
class ProviderContext:
    """Shared context injected into every adapter."""

    config: Config
    http: ProviderHttpClient
    matcher: PositionMatcher
    sink: ObservabilitySink


@dataclass(frozen=True, slots=True)
class TradeBatch:
    trades: list[RoundTripTrade]
    anomalies: list[ReconstructionAnomaly] = field(default_factory=list)
    fills_seen: int = 0


class ProviderAdapter(ABC):
    name: str
    kind: str  # "broker" | "ai"
    default_environment: str = "live"
    base_urls: dict[str, str] = {}

    def __init__(self, ctx: ProviderContext) -> None:
        self.ctx = ctx

    @property
    def settings(self) -> ProviderSettings:
        return self.ctx.config.provider_settings(self.name)

    def environment_for(self, requested: str | None) -> str:
        env = (requested or self.settings.environment or self.default_environment).lower()
        if self.base_urls and env not in self.base_urls:
            raise AuthError(f"unknown {self.name} environment: {env}", provider=self.name)
        return env

    def base_url(self, environment: str | None = None) -> str:
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        return self.base_urls[self.environment_for(environment)]

    async def _get(self, url: str, *, user_id: str | None = None, **kwargs: Any) -> Any:
        return await self.ctx.http.request_json(self.name, "GET", url, user_id=user_id, **kwargs)

    async def _post(self, url: str, *, user_id: str | None = None, **kwargs: Any) -> Any:
        return await self.ctx.http.request_json(self.name, "POST", url, user_id=user_id, **kwargs)


class BrokerAdapter(ProviderAdapter):
    """Template: subclasses implement `authenticate`, `get_accounts`, `fetch_trades`."""

    kind = "broker"

    @abstractmethod
    async def authenticate(self, credentials: BrokerCredentials, *, user_id: str | None = None) -> AuthResult:
        raise NotImplementedError

    @abstractmethod
    async def get_accounts(self, token: str, *, user_id: str | None = None) -> list[BrokerAccount]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> TradeBatch:
        raise NotImplementedError

    async def get_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> list[RoundTripTrade]:
        batch = await self.fetch_trades(token, account_id, since, user_id=user_id)
        return batch.trades

    def reconstruct(
        self,
        fills: list[Fill],
        *,
        fills_seen: int | None = None,
        since: datetime | None = None,
        truncated: bool = False,
    ) -> TradeBatch:
        """Shared matcher path for vendors that only expose raw executions.

        Fills are always matched over everything fetched; ``since`` only filters
        the finished trades, keeping those that closed at or after it. Matching
        a window cut at ``since`` would read a close as the open of a reversed
        position.

        ``truncated`` marks a fetch that hit the vendor's page limit, so the
        oldest fill of each (account, symbol) has unknown history. A trade
        opened on that fill is dropped and reported, not guessed at.
        """

        res = self.ctx.matcher.reconstruct(fills)
        anomalies = list(res.anomalies)
        trades = res.trades

        if truncated:
            oldest: dict[tuple[str | None, str], Fill] = {}
            for f in sorted(fills, key=fill_sort_key):
                oldest.setdefault((f.account_id, f.symbol), f)
            kept: list[RoundTripTrade] = []
            for t in trades:
                edge = oldest.get((t.account_id, t.symbol))
                if edge is not None and t.provider_trade_id == edge.provider_fill_id:
                    a = ReconstructionAnomaly(
                        "truncated_history",
                        f"{t.symbol} trade opens on the oldest fill of a full page; its history is cut",
                        severity="warning",
                        account_id=t.account_id,
                        symbol=t.symbol,
                        fill_id=edge.provider_fill_id,
                    )
                    anomalies.append(a)
                    self.ctx.sink.emit("reconstruction_anomaly", provider=self.name, **a.as_dict())
                    continue
                kept.append(t)
            trades = kept

        if since is not None:
            cutoff = ensure_utc(since)
            trades = [t for t in trades if t.closed_at >= cutoff]

        return TradeBatch(
            trades=trades,
            anomalies=anomalies,
            fills_seen=len(fills) if fills_seen is None else fills_seen,
        )


class AIAdapter(ProviderAdapter):
    kind = "ai"

    @abstractmethod
    async def generate(
        self,
        token: str,
        messages: list[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
        user_id: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> AIResponse:
        raise NotImplementedError

    async def authenticate(self, credentials: BrokerCredentials, *, user_id: str | None = None) -> AuthResult:
        # Vendor keys are bearer tokens already.
        if not credentials.api_key:
            raise AuthError(f"{self.name}: missing API key", provider=self.name)
        return AuthResult(access_token=credentials.api_key)

    async def get_accounts(self, token: str, *, user_id: str | None = None) -> list[BrokerAccount]:
        return []

    async def get_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> list[RoundTripTrade]:
        return []


def parse_json_token(token: str, *, provider: str) -> dict[str, Any]:
    """Decode tokens that carry key/secret/environment as a JSON blob."""

    try:
        data = json.loads(token)
    except (TypeError, ValueError) as e:
        raise AuthError(f"{provider}: malformed access token", provider=provider) from e
    if not isinstance(data, dict):
        raise AuthError(f"{provider}: malformed access token", provider=provider)
    return data


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
