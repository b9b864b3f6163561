from __future__ import annotations

import threading

import pytest

from tradesync.core.exceptions import SignatureConflictError, StoreError
from tradesync.core.types import Direction, PartialExit
from tradesync.journal.store import NewTrade, SqliteTradeStore
from tests.unit._helpers import ts


def _new(sig: str = "sig-1", **kw: object) -> NewTrade:
    base: dict[str, object] = {
        "user_id": "u1",
        "trade_signature": sig,
        "import_hash": f"ih-{sig}",
        "account_id": "acct",
        "symbol": "aapl",
        "direction": Direction.LONG,
        "opened_at": ts("2024-03-01T14:30:00"),
        "closed_at": ts("2024-03-01T15:00:00"),
        "entry_price": 150.0,
        "exit_price": 155.0,
        "quantity": 10.0,
        "realized_pnl": 50.0,
        "partial_exits": (PartialExit(ts("2024-03-01T15:00:00"), 155.0, 10.0, 50.0, 0.5),),
    }
    base.update(kw)
    return NewTrade(**base)  # type: ignore[arg-type]


def test_create_and_read_back(store: SqliteTradeStore) -> None:
    t = store.create_trade(_new())

    assert t.id > 0
    assert t.symbol == "AAPL"
    assert t.opened_at == ts("2024-03-01T14:30:00")
    assert t.partial_exits[0].fee == pytest.approx(0.5)
    assert store.find_by_signature("u1", "sig-1") == t
    assert store.find_by_import_hash("u1", "ih-sig-1") == t
    assert store.find_by_signature("u2", "sig-1") is None
    assert store.count_trades() == 1


def test_signature_uniqueness_is_per_user(store: SqliteTradeStore) -> None:
    store.create_trade(_new())
    with pytest.raises(SignatureConflictError):
        store.create_trade(_new(import_hash="other"))
    store.create_trade(_new(user_id="u2"))
    assert store.count_trades() == 2


def test_import_hash_uniqueness_is_not_a_signature_conflict(store: SqliteTradeStore) -> None:
    store.create_trade(_new("a", import_hash="same"))
    with pytest.raises(StoreError) as ei:
        store.create_trade(_new("b", import_hash="same"))
    assert not isinstance(ei.value, SignatureConflictError)


def test_null_import_hashes_do_not_collide(store: SqliteTradeStore) -> None:
    store.create_trade(_new("a", import_hash=None))
    store.create_trade(_new("b", import_hash=None))
    assert store.count_trades("u1") == 2


def test_find_candidates_scopes_by_account_symbol_and_date(store: SqliteTradeStore) -> None:
    store.create_trade(_new("a"))
    store.create_trade(_new("b", account_id=None))
    store.create_trade(_new("c", symbol="MSFT"))
    store.create_trade(_new("d", opened_at=ts("2024-03-02T10:00:00"), closed_at=ts("2024-03-02T11:00:00")))

    day = ts("2024-03-01T00:00:00").date()
    assert [t.trade_signature for t in store.find_candidates("u1", "acct", "aapl", day)] == ["a"]
    assert [t.trade_signature for t in store.find_candidates("u1", None, "AAPL", day)] == ["b"]


def test_update_whitelist_and_missing_rows(store: SqliteTradeStore) -> None:
    t = store.create_trade(_new())
    updated = store.update_trade(t.id, {"floating_runup": 12.5, "times_manually_set": True})
    assert updated.floating_runup == pytest.approx(12.5)
    assert updated.times_manually_set is True

    with pytest.raises(StoreError):
        store.update_trade(t.id, {"symbol": "MSFT"})
    with pytest.raises(StoreError):
        store.update_trade(9999, {"fees": 1.0})


def test_duplicate_partial_exit_rejected(store: SqliteTradeStore) -> None:
    t = store.create_trade(_new())
    with pytest.raises(StoreError):
        store.create_partial_exit(t.id, t.partial_exits[0])


def test_transaction_rolls_back_on_error(store: SqliteTradeStore) -> None:
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.create_trade(_new())
            raise RuntimeError("abort")
    assert store.count_trades() == 0


def test_nested_transactions_join_outer(store: SqliteTradeStore) -> None:
    with store.transaction():
        with store.transaction():
            store.create_trade(_new("a"))
        store.create_trade(_new("b"))
    assert store.count_trades() == 2


def test_concurrent_creates_of_same_signature(temp_dir) -> None:
    s = SqliteTradeStore(temp_dir / "race.db")
    results: list[str] = []
    guard = threading.Lock()

    def worker(i: int) -> None:
        try:
            s.create_trade(_new(import_hash=f"ih-{i}"))
            outcome = "created"
        except SignatureConflictError:
            outcome = "conflict"
        with guard:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    s.close()

    assert results.count("created") == 1
    assert results.count("conflict") == 7
