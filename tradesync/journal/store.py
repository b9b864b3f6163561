"""tradesync.journal.store

The persisted journal.

`TradeStore` is the contract the merge engine needs; `SqliteTradeStore` is the
bundled implementation. Uniqueness on (user_id, trade_signature) is enforced
here, in the schema, so two concurrent syncs can never create the same trade
twice.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Protocol

from tradesync.core.exceptions import SignatureConflictError, StoreError
from tradesync.core.types import Direction, PartialExit, StoredTrade

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Trades (one row per round trip)
-- ============================================================
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    trade_signature TEXT NOT NULL,
    import_hash TEXT,
    account_id TEXT,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL CHECK(direction IN ('LONG', 'SHORT')),
    opened_at TEXT NOT NULL,
    closed_at TEXT,
    entry_price REAL NOT NULL,
    exit_price REAL,
    quantity REAL NOT NULL CHECK(quantity > 0),
    realized_pnl REAL,
    fees REAL,
    provider_trade_id TEXT,
    floating_runup REAL,
    floating_drawdown REAL,
    times_manually_set INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, trade_signature)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_import_hash ON trades(user_id, import_hash)
    WHERE import_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_trades_lookup ON trades(user_id, symbol, opened_at);
CREATE INDEX IF NOT EXISTS idx_trades_provider_id ON trades(user_id, symbol, provider_trade_id)
    WHERE provider_trade_id IS NOT NULL;

-- ============================================================
-- Partial exits (one row per closing execution)
-- ============================================================
CREATE TABLE IF NOT EXISTS partial_exits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_id INTEGER NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
    exited_at TEXT NOT NULL,
    exit_price REAL NOT NULL,
    quantity REAL NOT NULL,
    pnl REAL NOT NULL,
    fee REAL NOT NULL DEFAULT 0,
    UNIQUE(trade_id, exited_at, exit_price, quantity)
);

CREATE INDEX IF NOT EXISTS idx_partial_exits_trade ON partial_exits(trade_id);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""

_UPDATABLE = frozenset(
    {
        "trade_signature",
        "import_hash",
        "account_id",
        "opened_at",
        "closed_at",
        "exit_price",
        "quantity",
        "realized_pnl",
        "fees",
        "provider_trade_id",
        "floating_runup",
        "floating_drawdown",
        "times_manually_set",
    }
)


def _dt_to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _iso_to_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _to_sql(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return _dt_to_iso(value)
    if key == "times_manually_set":
        return 1 if value else 0
    return value


@dataclass(frozen=True, slots=True)
class NewTrade:
    """Everything needed to insert a trade row."""

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


class TradeStore(Protocol):
    def transaction(self) -> Any: ...

    def find_by_signature(self, user_id: str, signature: str) -> StoredTrade | None: ...

    def find_by_import_hash(self, user_id: str, import_hash: str) -> StoredTrade | None: ...

    def find_by_provider_trade_id(self, user_id: str, symbol: str, provider_trade_id: str) -> StoredTrade | None: ...

    def find_candidates(
        self, user_id: str, account_id: str | None, symbol: str, on: date
    ) -> list[StoredTrade]: ...

    def create_trade(self, trade: NewTrade) -> StoredTrade: ...

    def update_trade(self, trade_id: int, changes: dict[str, Any]) -> StoredTrade: ...

    def create_partial_exit(self, trade_id: int, exit: PartialExit) -> None: ...

    def get_trade(self, trade_id: int) -> StoredTrade | None: ...


class SqliteTradeStore:
    """SQLite journal. Thread-safe via an RLock; transactions nest."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        try:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.DatabaseError as e:
            raise StoreError(f"schema init failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[SqliteTradeStore]:
        """One logical unit of work. Inner calls join the outer transaction."""

        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self.conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self.conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _exits_for(self, trade_id: int) -> tuple[PartialExit, ...]:
        rows = self.conn.execute(
            "SELECT * FROM partial_exits WHERE trade_id = ? ORDER BY exited_at, id",
            (trade_id,),
        ).fetchall()
        return tuple(
            PartialExit(
                exited_at=_iso_to_dt(r["exited_at"]),  # type: ignore[arg-type]
                exit_price=float(r["exit_price"]),
                quantity=float(r["quantity"]),
                pnl=float(r["pnl"]),
                fee=float(r["fee"] or 0.0),
            )
            for r in rows
        )

    def _row_to_trade(self, row: sqlite3.Row) -> StoredTrade:
        def _opt(key: str) -> float | None:
            v = row[key]
            return None if v is None else float(v)

        return StoredTrade(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            trade_signature=str(row["trade_signature"]),
            import_hash=row["import_hash"],
            account_id=row["account_id"],
            symbol=str(row["symbol"]),
            direction=Direction(row["direction"]),
            opened_at=_iso_to_dt(row["opened_at"]),  # type: ignore[arg-type]
            closed_at=_iso_to_dt(row["closed_at"]),
            entry_price=float(row["entry_price"]),
            exit_price=_opt("exit_price"),
            quantity=float(row["quantity"]),
            realized_pnl=_opt("realized_pnl"),
            fees=_opt("fees"),
            partial_exits=self._exits_for(int(row["id"])),
            provider_trade_id=row["provider_trade_id"],
            floating_runup=_opt("floating_runup"),
            floating_drawdown=_opt("floating_drawdown"),
            times_manually_set=bool(row["times_manually_set"]),
        )

    def _one(self, sql: str, params: tuple[Any, ...]) -> StoredTrade | None:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
            return None if row is None else self._row_to_trade(row)

    def get_trade(self, trade_id: int) -> StoredTrade | None:
        return self._one("SELECT * FROM trades WHERE id = ?", (trade_id,))

    def find_by_signature(self, user_id: str, signature: str) -> StoredTrade | None:
        return self._one(
            "SELECT * FROM trades WHERE user_id = ? AND trade_signature = ?",
            (user_id, signature),
        )

    def find_by_import_hash(self, user_id: str, import_hash: str) -> StoredTrade | None:
        return self._one(
            "SELECT * FROM trades WHERE user_id = ? AND import_hash = ?",
            (user_id, import_hash),
        )

    def find_by_provider_trade_id(self, user_id: str, symbol: str, provider_trade_id: str) -> StoredTrade | None:
        return self._one(
            "SELECT * FROM trades WHERE user_id = ? AND symbol = ? AND provider_trade_id = ? ORDER BY id LIMIT 1",
            (user_id, symbol.strip().upper(), provider_trade_id),
        )

    def find_candidates(self, user_id: str, account_id: str | None, symbol: str, on: date) -> list[StoredTrade]:
        """Same user, same account (NULL matches NULL), same symbol, same UTC date."""

        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM trades
                WHERE user_id = ? AND account_id IS ? AND symbol = ? AND substr(opened_at, 1, 10) = ?
                ORDER BY id
                """,
                (user_id, account_id, symbol.strip().upper(), on.isoformat()),
            ).fetchall()
            return [self._row_to_trade(r) for r in rows]

    def list_trades(self, user_id: str, *, limit: int = 1000) -> list[StoredTrade]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM trades WHERE user_id = ? ORDER BY opened_at, id LIMIT ?",
                (user_id, int(limit)),
            ).fetchall()
            return [self._row_to_trade(r) for r in rows]

    def count_trades(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is None:
                row = self.conn.execute("SELECT COUNT(1) FROM trades").fetchone()
            else:
                row = self.conn.execute("SELECT COUNT(1) FROM trades WHERE user_id = ?", (user_id,)).fetchone()
            return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_trade(self, trade: NewTrade) -> StoredTrade:
        with self.transaction():
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO trades (
                        user_id, trade_signature, import_hash, account_id, symbol, direction,
                        opened_at, closed_at, entry_price, exit_price, quantity, realized_pnl,
                        fees, provider_trade_id, floating_runup, floating_drawdown, times_manually_set
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        trade.user_id,
                        trade.trade_signature,
                        trade.import_hash,
                        trade.account_id,
                        trade.symbol.strip().upper(),
                        str(trade.direction),
                        _dt_to_iso(trade.opened_at),
                        _dt_to_iso(trade.closed_at),
                        float(trade.entry_price),
                        trade.exit_price,
                        float(trade.quantity),
                        trade.realized_pnl,
                        trade.fees,
                        trade.provider_trade_id,
                        trade.floating_runup,
                        trade.floating_drawdown,
                        1 if trade.times_manually_set else 0,
                    ),
                )
            except sqlite3.IntegrityError as e:
                msg = str(e)
                if "trade_signature" in msg:
                    raise SignatureConflictError(f"signature already stored for user {trade.user_id}") from e
                raise StoreError(msg) from e

            trade_id = int(cur.lastrowid)
            for ex in trade.partial_exits:
                self.create_partial_exit(trade_id, ex)

        created = self.get_trade(trade_id)
        if created is None:
            raise StoreError(f"trade {trade_id} vanished after insert")
        return created

    def update_trade(self, trade_id: int, changes: dict[str, Any]) -> StoredTrade:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise StoreError(f"not updatable: {sorted(unknown)}")

        with self.transaction():
            if changes:
                cols = ", ".join(f"{k} = ?" for k in changes)
                params = [_to_sql(k, v) for k, v in changes.items()]
                try:
                    cur = self.conn.execute(
                        f"UPDATE trades SET {cols}, updated_at = datetime('now') WHERE id = ?",
                        (*params, trade_id),
                    )
                except sqlite3.IntegrityError as e:
                    if "trade_signature" in str(e):
                        raise SignatureConflictError(f"signature collision updating trade {trade_id}") from e
                    raise StoreError(str(e)) from e
                if cur.rowcount == 0:
                    raise StoreError(f"trade {trade_id} not found")

        updated = self.get_trade(trade_id)
        if updated is None:
            raise StoreError(f"trade {trade_id} not found")
        return updated

    def create_partial_exit(self, trade_id: int, exit: PartialExit) -> None:
        with self.transaction():
            try:
                self.conn.execute(
                    """
                    INSERT INTO partial_exits (trade_id, exited_at, exit_price, quantity, pnl, fee)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        trade_id,
                        _dt_to_iso(exit.exited_at),
                        float(exit.exit_price),
                        float(exit.quantity),
                        float(exit.pnl),
                        float(exit.fee),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise StoreError(f"partial exit rejected for trade {trade_id}: {e}") from e
