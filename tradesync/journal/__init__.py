"""tradesync.journal

Signatures, the persisted store, and the create-or-merge engine.
"""

from .merge import ImportResult, MergeEngine
from .signature import import_hash, prices_match, trade_signature
from .store import NewTrade, SqliteTradeStore, TradeStore

__all__ = [
    "ImportResult",
    "MergeEngine",
    "NewTrade",
    "SqliteTradeStore",
    "TradeStore",
    "import_hash",
    "prices_match",
    "trade_signature",
]
