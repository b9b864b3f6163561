"""tradesync.journal.merge

Create, enrich, or skip.

Lookup order for a candidate trade:
0. the broker trade id, when the candidate carries one
1. exact signature
2. the account-less signature, when the candidate carries an account
   (a trade imported before the account was known)
3. fuzzy: same user, account, symbol, direction and UTC date, entry price
   within tolerance; nearest entry price wins

Steps 1-3 never match a stored trade whose broker trade id differs from the
candidate's: two round trips on one day at one price stay two trades, the
second stored under a signature made distinct by its broker id.

Merge rules are backfill-only. A non-null stored value is never replaced by a
different non-null value, except that appending new partial exits extends the
exit aggregates. Running the same candidate twice converges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tradesync.core.config import MergeConfig
from tradesync.core.exceptions import SignatureConflictError, StoreError
from tradesync.core.observability import ObservabilitySink
from tradesync.core.time import is_placeholder_time, parse_time_of_day, trade_date
from tradesync.core.types import MergeAction, MergeOutcome, PartialExit, RoundTripTrade, StoredTrade
from tradesync.journal.signature import (
    distinct_signature,
    import_hash_for,
    prices_match,
    signature_for,
    trade_signature,
)
from tradesync.journal.store import NewTrade, TradeStore

logger = logging.getLogger(__name__)

_QTY_TOLERANCE = 1e-9


@dataclass(frozen=True, slots=True)
class ImportResult:
    imported: int
    merged: int
    skipped: int
    errors: list[str] = field(default_factory=list)


def _qty_equal(a: float, b: float) -> bool:
    return abs(a - b) <= _QTY_TOLERANCE * max(1.0, abs(a), abs(b))


def same_execution(existing: StoredTrade, candidate: RoundTripTrade) -> bool:
    """False only when both sides carry a broker trade id and the ids differ."""

    if existing.provider_trade_id is None or candidate.provider_trade_id is None:
        return True
    return existing.provider_trade_id == candidate.provider_trade_id


class MergeEngine:
    def __init__(self, store: TradeStore, config: MergeConfig | None = None, *, sink: ObservabilitySink | None = None) -> None:
        self.store = store
        self.config = config or MergeConfig()
        self._placeholders = parse_time_of_day(self.config.placeholder_times)
        self._sink = sink

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_existing(self, user_id: str, candidate: RoundTripTrade) -> tuple[StoredTrade | None, str]:
        """Return (existing trade, how it was found)."""

        if candidate.provider_trade_id is not None:
            found = self.store.find_by_provider_trade_id(user_id, candidate.symbol, candidate.provider_trade_id)
            if found is not None:
                return found, "provider_trade_id"

        found = self.store.find_by_signature(user_id, signature_for(user_id, candidate))
        if found is not None and same_execution(found, candidate):
            return found, "signature"

        if candidate.account_id is not None:
            sig = trade_signature(user_id, None, candidate.symbol, candidate.opened_at, candidate.entry_price)
            found = self.store.find_by_signature(user_id, sig)
            if found is not None and same_execution(found, candidate):
                return found, "signature_no_account"

        candidates = [
            t
            for t in self.store.find_candidates(
                user_id, candidate.account_id, candidate.symbol, trade_date(candidate.opened_at)
            )
            if t.direction is candidate.direction
            and same_execution(t, candidate)
            and prices_match(
                t.entry_price,
                candidate.entry_price,
                pct=self.config.price_tolerance_pct,
                abs_floor=self.config.price_tolerance_abs,
            )
        ]
        if not candidates:
            return None, "none"
        best = min(candidates, key=lambda t: (abs(t.entry_price - candidate.entry_price), t.id))
        return best, "fuzzy"

    def _signature_for_new(self, user_id: str, candidate: RoundTripTrade) -> str:
        sig = signature_for(user_id, candidate)
        if candidate.provider_trade_id is None:
            return sig
        taken = self.store.find_by_signature(user_id, sig)
        if taken is not None and not same_execution(taken, candidate):
            return distinct_signature(sig, candidate.provider_trade_id)
        return sig

    # ------------------------------------------------------------------
    # Create / merge
    # ------------------------------------------------------------------

    def create_or_merge(self, user_id: str, candidate: RoundTripTrade) -> MergeOutcome:
        with self.store.transaction():
            existing, how = self.find_existing(user_id, candidate)
            if existing is None:
                try:
                    return self._create(user_id, candidate)
                except SignatureConflictError:
                    # Lost a race with a concurrent sync; merge into the winner.
                    existing = self.store.find_by_signature(user_id, signature_for(user_id, candidate))
                    if existing is None or not same_execution(existing, candidate):
                        raise
                    how = "signature_race"
            return self._merge(user_id, existing, candidate, how)

    def _create(self, user_id: str, candidate: RoundTripTrade) -> MergeOutcome:
        ih: str | None = import_hash_for(user_id, candidate)
        if self.store.find_by_import_hash(user_id, ih) is not None:
            # Identical economics filed under another account; the strict hash stays with the first.
            ih = None
        stored = self.store.create_trade(
            NewTrade(
                user_id=user_id,
                trade_signature=self._signature_for_new(user_id, candidate),
                import_hash=ih,
                account_id=candidate.account_id,
                symbol=candidate.symbol,
                direction=candidate.direction,
                opened_at=candidate.opened_at,
                closed_at=candidate.closed_at,
                entry_price=candidate.entry_price,
                exit_price=candidate.exit_price,
                quantity=candidate.quantity,
                realized_pnl=candidate.realized_pnl,
                fees=candidate.fees,
                partial_exits=candidate.partial_exits,
                provider_trade_id=candidate.provider_trade_id,
                floating_runup=candidate.floating_runup,
                floating_drawdown=candidate.floating_drawdown,
                times_manually_set=False,
            )
        )
        logger.info("trade_created", extra={"trade_id": stored.id, "symbol": stored.symbol, "account_id": stored.account_id})
        return MergeOutcome(action=MergeAction.CREATED, trade=stored, changes=["created"])

    def _merge(self, user_id: str, existing: StoredTrade, candidate: RoundTripTrade, how: str) -> MergeOutcome:
        changes: dict[str, Any] = {}
        new_exits: list[PartialExit] = []

        # (a) placeholder timestamps
        if not existing.times_manually_set:
            if is_placeholder_time(existing.opened_at, self._placeholders) and not is_placeholder_time(
                candidate.opened_at, self._placeholders
            ):
                changes["opened_at"] = candidate.opened_at
            if is_placeholder_time(existing.closed_at, self._placeholders) and not is_placeholder_time(
                candidate.closed_at, self._placeholders
            ):
                changes["closed_at"] = candidate.closed_at

        # (b) partial exits, only between records of the same execution
        have = {e.signature for e in existing.partial_exits}
        same = same_execution(existing, candidate)
        if same and existing.partial_exits:
            sign = existing.direction.sign
            for e in candidate.partial_exits:
                if e.signature in have:
                    continue
                have.add(e.signature)
                pnl = (e.exit_price - existing.entry_price) * e.quantity * sign
                new_exits.append(PartialExit(e.exited_at, e.exit_price, e.quantity, pnl, e.fee))
            if new_exits:
                full = list(existing.partial_exits) + new_exits
                qty = sum(x.quantity for x in full)
                changes["quantity"] = qty
                changes["exit_price"] = sum(x.quantity * x.exit_price for x in full) / qty
                changes["realized_pnl"] = sum(x.pnl for x in full)
                changes["closed_at"] = max(x.exited_at for x in full)
        elif same and candidate.partial_exits:
            total = sum(e.quantity for e in candidate.partial_exits)
            if _qty_equal(total, existing.quantity):
                sign = existing.direction.sign
                new_exits = [
                    PartialExit(e.exited_at, e.exit_price, e.quantity, (e.exit_price - existing.entry_price) * e.quantity * sign, e.fee)
                    for e in candidate.partial_exits
                ]
                if existing.exit_price is None:
                    changes["exit_price"] = sum(x.quantity * x.exit_price for x in new_exits) / total
                if existing.realized_pnl is None:
                    changes["realized_pnl"] = sum(x.pnl for x in new_exits)
                if existing.closed_at is None:
                    changes["closed_at"] = max(x.exited_at for x in new_exits)
            else:
                logger.info(
                    "partial_exits_not_adopted",
                    extra={"trade_id": existing.id, "existing_qty": existing.quantity, "candidate_qty": total},
                )

        opened = changes.get("opened_at", existing.opened_at)
        closed = changes.get("closed_at", existing.closed_at)
        if closed is not None and closed < opened:
            changes.pop("opened_at", None)

        # (c) account backfill, re-keying the signature
        if existing.account_id is None and candidate.account_id is not None:
            new_sig = trade_signature(
                user_id, candidate.account_id, existing.symbol, changes.get("opened_at", existing.opened_at), existing.entry_price
            )
            clash = self.store.find_by_signature(user_id, new_sig)
            if clash is None or clash.id == existing.id:
                changes["account_id"] = candidate.account_id
                changes["trade_signature"] = new_sig
            else:
                logger.warning(
                    "account_backfill_conflict",
                    extra={"trade_id": existing.id, "conflicting_trade_id": clash.id},
                )

        # (d) MAE / MFE
        if existing.floating_runup is None and candidate.floating_runup is not None:
            changes["floating_runup"] = candidate.floating_runup
        if existing.floating_drawdown is None and candidate.floating_drawdown is not None:
            changes["floating_drawdown"] = candidate.floating_drawdown

        # (e) fees and vendor id
        if existing.fees is None and candidate.fees:
            changes["fees"] = candidate.fees
        if existing.provider_trade_id is None and candidate.provider_trade_id is not None:
            changes["provider_trade_id"] = candidate.provider_trade_id

        if not changes and not new_exits:
            return MergeOutcome(action=MergeAction.SKIPPED, trade=existing, changes=[])

        updated = self.store.update_trade(existing.id, changes)
        for e in new_exits:
            self.store.create_partial_exit(existing.id, e)
        if new_exits:
            refreshed = self.store.get_trade(existing.id)
            if refreshed is None:
                raise StoreError(f"trade {existing.id} vanished during merge")
            updated = refreshed

        names = sorted(changes) + (["partial_exits"] if new_exits else [])
        logger.info("trade_merged", extra={"trade_id": existing.id, "matched_by": how, "changes": names})
        return MergeOutcome(action=MergeAction.UPDATED, trade=updated, changes=names)

    # ------------------------------------------------------------------
    # One-shot import
    # ------------------------------------------------------------------

    def import_exact(self, user_id: str, candidates: list[RoundTripTrade]) -> ImportResult:
        """Strict import: rejects exact duplicates by ImportHash only."""

        imported = merged = skipped = 0
        errors: list[str] = []
        for i, c in enumerate(candidates):
            try:
                with self.store.transaction():
                    if self.store.find_by_import_hash(user_id, import_hash_for(user_id, c)) is not None:
                        skipped += 1
                        continue
                    try:
                        self._create(user_id, c)
                        imported += 1
                    except SignatureConflictError:
                        existing = self.store.find_by_signature(user_id, signature_for(user_id, c))
                        if existing is None or not same_execution(existing, c):
                            raise
                        outcome = self._merge(user_id, existing, c, "import_signature")
                        if outcome.action is MergeAction.UPDATED:
                            merged += 1
                        else:
                            skipped += 1
            except (StoreError, ValueError) as e:
                errors.append(f"row {i} {c.symbol}: {e}")
        if self._sink is not None and errors:
            self._sink.emit("import_errors", user_id=user_id, count=len(errors))
        return ImportResult(imported=imported, merged=merged, skipped=skipped, errors=errors)
