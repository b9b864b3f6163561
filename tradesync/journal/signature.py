"""tradesync.journal.signature

Two fingerprints, two jobs:

- TradeSignature (fuzzy): recognises "the same trade" across repeated syncs
  and alternate sources even when time-of-day or exit data differs.
  sha256(user | account or "no-account" | SYMBOL | YYYY-MM-DD(opened_at) | entry.2f)
- ImportHash (strict): rejects exact duplicates on one-shot imports.
  sha256(user | SYMBOL | opened_at iso | closed_at iso | entry.8f | exit.8f | pnl.2f)

Both hash pipe-joined canonical fields, like the event hash chain.
"""

from __future__ import annotations

import hashlib
from datetime import datetime

from tradesync.core.time import ensure_utc, trade_date
from tradesync.core.types import RoundTripTrade

NO_ACCOUNT = "no-account"


def _sha256(parts: list[str]) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _fmt(value: float | None, places: int) -> str:
    # Normalise -0.00 so the same price never hashes two ways.
    v = round(float(value or 0.0), places)
    return f"{v + 0.0:.{places}f}"


def trade_signature(
    user_id: str,
    account_id: str | None,
    symbol: str,
    opened_at: datetime,
    entry_price: float,
) -> str:
    return _sha256(
        [
            str(user_id),
            account_id or NO_ACCOUNT,
            symbol.strip().upper(),
            trade_date(opened_at).isoformat(),
            _fmt(entry_price, 2),
        ]
    )


def signature_for(user_id: str, trade: RoundTripTrade) -> str:
    return trade_signature(user_id, trade.account_id, trade.symbol, trade.opened_at, trade.entry_price)


def distinct_signature(signature: str, provider_trade_id: str) -> str:
    """A TradeSignature made unique by the broker trade id.

    Used when two broker round trips share a base signature (same account,
    symbol, day and entry price) but are different executions.
    """

    return _sha256([signature, "broker", str(provider_trade_id)])


def import_hash(
    user_id: str,
    symbol: str,
    opened_at: datetime,
    closed_at: datetime | None,
    entry_price: float,
    exit_price: float | None,
    realized_pnl: float | None,
) -> str:
    return _sha256(
        [
            str(user_id),
            symbol.strip().upper(),
            ensure_utc(opened_at).isoformat(),
            ensure_utc(closed_at).isoformat() if closed_at is not None else "",
            _fmt(entry_price, 8),
            _fmt(exit_price, 8),
            _fmt(realized_pnl, 2),
        ]
    )


def import_hash_for(user_id: str, trade: RoundTripTrade) -> str:
    return import_hash(
        user_id,
        trade.symbol,
        trade.opened_at,
        trade.closed_at,
        trade.entry_price,
        trade.exit_price,
        trade.realized_pnl,
    )


def prices_match(a: float, b: float, *, pct: float = 0.005, abs_floor: float = 0.005) -> bool:
    """The single "same entry price" predicate used by fuzzy lookup.

    Within ``pct`` of the larger magnitude, with an absolute floor so that
    prices which round to the same cent always match (the exact-signature
    fast path is therefore a subset of this predicate).
    """

    return abs(a - b) <= max(abs_floor, pct * max(abs(a), abs(b)))
