"""tradesync.core

Core primitives.

If a module needs to exist, it should probably depend only on this package.
"""

from .config import Config
from .exceptions import TradeSyncError
from .observability import ObservabilitySink
from .time import parse_dt, utc_now

__all__ = [
    "Config",
    "ObservabilitySink",
    "TradeSyncError",
    "parse_dt",
    "utc_now",
]
