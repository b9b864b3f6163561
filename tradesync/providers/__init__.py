"""tradesync.providers

Broker and AI adapters. Importing this package registers every adapter.
"""

from . import ai, alpaca, oanda, tradovate  # noqa: F401 - registration side effects
from .base import AIAdapter, BrokerAdapter, ProviderAdapter, ProviderContext, TradeBatch
from .http import ProviderHttpClient
from .registry import create_provider, get_provider, list_providers, register

__all__ = [
    "AIAdapter",
    "BrokerAdapter",
    "ProviderAdapter",
    "ProviderContext",
    "ProviderHttpClient",
    "TradeBatch",
    "create_provider",
    "get_provider",
    "list_providers",
    "register",
]
