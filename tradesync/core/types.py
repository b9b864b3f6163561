"""tradesync.core.types

Lightweight dataclasses for hot-path objects.

Pydantic models own IO boundaries; dataclasses keep runtime lean.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from tradesync.core.time import ensure_utc


class Side(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class Direction(StrEnum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


@dataclass(frozen=True, slots=True)
class Fill:
    """One matched execution. ``quantity`` is signed: positive buys, negative sells."""

    provider_fill_id: str
    account_id: str | None
    symbol: str
    side: Side
    quantity: float
    price: float
    timestamp: datetime
    fee_amount: float = 0.0
    sequence: int | None = None

    def __post_init__(self) -> None:
        if self.quantity == 0:
            raise ValueError(f"fill {self.provider_fill_id}: quantity must be non-zero")
        if (self.quantity > 0) != (self.side is Side.BUY):
            raise ValueError(f"fill {self.provider_fill_id}: quantity sign disagrees with side {self.side}")

    @property
    def size(self) -> float:
        return abs(self.quantity)

    @classmethod
    def create(
        cls,
        *,
        provider_fill_id: str,
        account_id: str | None,
        symbol: str,
        side: Side | str,
        size: float,
        price: float,
        timestamp: datetime,
        fee_amount: float = 0.0,
        sequence: int | None = None,
    ) -> Fill:
        """Build a fill from an unsigned size, signing it by side."""

        s = Side(str(side).upper())
        qty = abs(float(size))
        return cls(
            provider_fill_id=str(provider_fill_id),
            account_id=account_id,
            symbol=symbol,
            side=s,
            quantity=qty if s is Side.BUY else -qty,
            price=float(price),
            timestamp=timestamp,
            fee_amount=abs(float(fee_amount)),
            sequence=sequence,
        )


@dataclass(frozen=True, slots=True)
class PartialExit:
    exited_at: datetime
    exit_price: float
    quantity: float
    pnl: float
    fee: float = 0.0

    @property
    def signature(self) -> tuple[str, float, float]:
        return (ensure_utc(self.exited_at).isoformat(), round(self.exit_price, 8), round(self.quantity, 8))


@dataclass(frozen=True, slots=True)
class RoundTripTrade:
    account_id: str | None
    symbol: str
    direction: Direction
    opened_at: datetime
    closed_at: datetime
    entry_price: float
    exit_price: float
    quantity: float
    realized_pnl: float
    fees: float = 0.0
    partial_exits: tuple[PartialExit, ...] = ()
    provider_trade_id: str | None = None
    floating_runup: float | None = None  # MFE
    floating_drawdown: float | None = None  # MAE

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError("trade quantity must be > 0")
        if self.closed_at < self.opened_at:
            raise ValueError("closed_at must be >= opened_at")

    @property
    def has_partial_exits(self) -> bool:
        return len(self.partial_exits) > 1

    @property
    def gross_pnl(self) -> float:
        return self.realized_pnl + self.fees


@dataclass(frozen=True, slots=True)
class StoredTrade:
    """A persisted journal row."""

    id: int
    user_id: str
    trade_signature: str
    import_hash: str | None
    account_id: str | None
    symbol: str
    direction: Direction
    opened_at: datetime
    closed_at: datetime | None
    entry_price: float
    exit_price: float | None
    quantity: float
    realized_pnl: float | None
    fees: float | None = None
    partial_exits: tuple[PartialExit, ...] = ()
    provider_trade_id: str | None = None
    floating_runup: float | None = None
    floating_drawdown: float | None = None
    times_manually_set: bool = False

    @property
    def has_partial_exits(self) -> bool:
        return len(self.partial_exits) > 1


class MergeAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    action: MergeAction
    trade: StoredTrade
    changes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Broker-side types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BrokerCredentials:
    api_key: str
    api_secret: str
    environment: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"BrokerCredentials(api_key='***', api_secret='***', environment={self.environment!r})"


@dataclass(frozen=True, slots=True)
class AuthResult:
    access_token: str
    expires_at: datetime | None = None
    broker_user_id: str | None = None

    def __repr__(self) -> str:
        return f"AuthResult(access_token='***', expires_at={self.expires_at!r}, broker_user_id={self.broker_user_id!r})"


@dataclass(frozen=True, slots=True)
class BrokerAccount:
    id: str
    name: str
    balance: float | None = None
    currency: str | None = None


@dataclass(frozen=True, slots=True)
class BrokerConnection:
    """What the scheduler knows about one linked broker account."""

    user_id: str
    provider: str
    broker_account_id: str
    account_id: str | None = None  # journal account the trades are filed under
    access_token: str | None = None
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SyncResult:
    provider: str
    user_id: str
    broker_account_id: str
    created: int
    updated: int
    skipped: int
    errored: int
    errors: list[str]
    anomalies: list[dict[str, Any]]
    duration_ms: int
    success: bool
    auth_result: AuthResult | None = None


@dataclass(frozen=True, slots=True)
class BatchSyncResult:
    results: list[SyncResult]

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.results)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.results)

    @property
    def errored(self) -> int:
        return sum(r.errored for r in self.results)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)


# ---------------------------------------------------------------------------
# AI-side types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str  # system|user|assistant
    content: str


@dataclass(frozen=True, slots=True)
class AIResponse:
    content: str
    provider: str
    model: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0
    retries_attempted: int = 0
