"""tradesync.reconstruction.matcher

Fills -> round-trip trades.

A position opens when net quantity leaves zero and is finalised, emitting one
`RoundTripTrade`, when it returns to exactly zero. Fills that add to the
position are entries (weighted-average price); fills that reduce it are exits
(one `PartialExit` each). A fill that crosses zero is split: the closing part
finalises the current trade, the rest opens the next one, and the fee is split
pro-rata between them.

Pure: no IO, no shared state. Callers feed one (account_id, symbol) key per
`match` call, or hand everything to `reconstruct`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from tradesync.core.exceptions import ReconstructionAnomaly
from tradesync.core.observability import ObservabilitySink
from tradesync.core.types import Direction, Fill, PartialExit, RoundTripTrade

logger = logging.getLogger(__name__)

# Quantities below this are treated as zero (float residue from fractional shares).
QTY_EPSILON = 1e-9


@dataclass(slots=True)
class Position:
    account_id: str | None
    symbol: str
    direction: Direction
    net_quantity: float  # absolute open size
    weighted_entry_price: float
    open_timestamp: datetime
    accumulated_entry_fees: float = 0.0
    partial_exits: list[PartialExit] = field(default_factory=list)
    first_fill_id: str | None = None

    def add(self, size: float, price: float, fee: float) -> None:
        total = self.net_quantity + size
        self.weighted_entry_price = (self.net_quantity * self.weighted_entry_price + size * price) / total
        self.net_quantity = total
        self.accumulated_entry_fees += fee


@dataclass(frozen=True, slots=True)
class MatchResult:
    trades: list[RoundTripTrade]
    open_position: Position | None
    anomalies: list[ReconstructionAnomaly]


@dataclass(frozen=True, slots=True)
class ReconstructionResult:
    trades: list[RoundTripTrade]
    open_positions: list[Position]
    anomalies: list[ReconstructionAnomaly]


def fill_sort_key(f: Fill) -> tuple[datetime, bool, int]:
    return (f.timestamp, f.sequence is None, f.sequence or 0)


def _finalise(pos: Position) -> RoundTripTrade:
    exits = tuple(pos.partial_exits)
    qty = sum(e.quantity for e in exits)
    exit_price = sum(e.quantity * e.exit_price for e in exits) / qty
    return RoundTripTrade(
        account_id=pos.account_id,
        symbol=pos.symbol,
        direction=pos.direction,
        opened_at=pos.open_timestamp,
        closed_at=max(e.exited_at for e in exits),
        entry_price=pos.weighted_entry_price,
        exit_price=exit_price,
        quantity=qty,
        realized_pnl=sum(e.pnl for e in exits),
        fees=pos.accumulated_entry_fees + sum(e.fee for e in exits),
        partial_exits=exits,
        provider_trade_id=pos.first_fill_id,
    )


class PositionMatcher:
    def __init__(self, *, strict: bool = False, sink: ObservabilitySink | None = None) -> None:
        self.strict = strict
        self._sink = sink

    def _report(self, anomalies: list[ReconstructionAnomaly], anomaly: ReconstructionAnomaly) -> None:
        if self.strict and anomaly.severity == "error":
            raise anomaly
        anomalies.append(anomaly)
        if self._sink is not None:
            self._sink.emit("reconstruction_anomaly", **anomaly.as_dict())

    def match(self, fills: Iterable[Fill]) -> MatchResult:
        """Reconstruct trades for a single (account_id, symbol) key."""

        ordered = sorted(fills, key=fill_sort_key)
        trades: list[RoundTripTrade] = []
        anomalies: list[ReconstructionAnomaly] = []
        if not ordered:
            return MatchResult(trades=trades, open_position=None, anomalies=anomalies)

        key = (ordered[0].account_id, ordered[0].symbol)
        seen_ids: set[str] = set()
        pos: Position | None = None

        for f in ordered:
            if (f.account_id, f.symbol) != key:
                self._report(
                    anomalies,
                    ReconstructionAnomaly(
                        "invalid_fill",
                        f"fill belongs to {f.account_id}/{f.symbol}, expected {key[0]}/{key[1]}",
                        account_id=f.account_id,
                        symbol=f.symbol,
                        fill_id=f.provider_fill_id,
                    ),
                )
                continue
            if not (math.isfinite(f.price) and f.price > 0) or not math.isfinite(f.quantity):
                self._report(
                    anomalies,
                    ReconstructionAnomaly(
                        "invalid_fill",
                        f"non-positive or non-finite price/quantity ({f.price}, {f.quantity})",
                        account_id=f.account_id,
                        symbol=f.symbol,
                        fill_id=f.provider_fill_id,
                    ),
                )
                continue
            if f.provider_fill_id in seen_ids:
                self._report(
                    anomalies,
                    ReconstructionAnomaly(
                        "duplicate_fill",
                        f"fill id {f.provider_fill_id} seen more than once",
                        account_id=f.account_id,
                        symbol=f.symbol,
                        fill_id=f.provider_fill_id,
                    ),
                )
                continue
            seen_ids.add(f.provider_fill_id)

            fill_dir = Direction.LONG if f.quantity > 0 else Direction.SHORT
            size = f.size
            fee = abs(f.fee_amount)

            if pos is None:
                pos = self._open(f, fill_dir, size, fee)
                continue

            if fill_dir is pos.direction:
                pos.add(size, f.price, fee)
                continue

            close_qty = min(size, pos.net_quantity)
            close_fee = fee * (close_qty / size)
            pnl = (f.price - pos.weighted_entry_price) * close_qty * pos.direction.sign
            pos.partial_exits.append(
                PartialExit(exited_at=f.timestamp, exit_price=f.price, quantity=close_qty, pnl=pnl, fee=close_fee)
            )
            pos.net_quantity -= close_qty

            if pos.net_quantity > QTY_EPSILON:
                continue

            trades.append(_finalise(pos))
            pos = None

            remainder = size - close_qty
            if remainder > QTY_EPSILON:
                self._report(
                    anomalies,
                    ReconstructionAnomaly(
                        "position_flip",
                        f"fill over-closed by {remainder:g}; split into close + new {fill_dir} position",
                        severity="info",
                        account_id=f.account_id,
                        symbol=f.symbol,
                        fill_id=f.provider_fill_id,
                    ),
                )
                pos = self._open(f, fill_dir, remainder, fee - close_fee)

        if pos is not None:
            self._report(
                anomalies,
                ReconstructionAnomaly(
                    "open_position",
                    f"{pos.direction} {pos.net_quantity:g} still open at end of feed",
                    severity="info",
                    account_id=pos.account_id,
                    symbol=pos.symbol,
                    fill_id=pos.first_fill_id,
                ),
            )

        return MatchResult(trades=trades, open_position=pos, anomalies=anomalies)

    @staticmethod
    def _open(f: Fill, direction: Direction, size: float, fee: float) -> Position:
        return Position(
            account_id=f.account_id,
            symbol=f.symbol,
            direction=direction,
            net_quantity=size,
            weighted_entry_price=f.price,
            open_timestamp=f.timestamp,
            accumulated_entry_fees=fee,
            first_fill_id=f.provider_fill_id,
        )

    def reconstruct(self, fills: Sequence[Fill]) -> ReconstructionResult:
        """Group by (account_id, symbol) and match each key independently."""

        groups: dict[tuple[str | None, str], list[Fill]] = {}
        for f in fills:
            groups.setdefault((f.account_id, f.symbol), []).append(f)

        trades: list[RoundTripTrade] = []
        open_positions: list[Position] = []
        anomalies: list[ReconstructionAnomaly] = []
        for key in sorted(groups, key=lambda k: (k[0] or "", k[1])):
            res = self.match(groups[key])
            trades.extend(res.trades)
            anomalies.extend(res.anomalies)
            if res.open_position is not None:
                open_positions.append(res.open_position)

        trades.sort(key=lambda t: (t.closed_at, t.symbol))
        logger.debug(
            "reconstruct_done",
            extra={"keys": len(groups), "trades": len(trades), "anomalies": len(anomalies)},
        )
        return ReconstructionResult(trades=trades, open_positions=open_positions, anomalies=anomalies)
