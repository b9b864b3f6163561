"""tradesync.sync.vault

Where broker credentials come from at sync time.

Vaults are read-only from the engine's point of view: the sync never writes
secrets back. Refreshed tokens live on the `SyncResult`, and the caller
decides where to keep them.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol

from tradesync.core.exceptions import AuthError
from tradesync.core.types import BrokerCredentials

ENV_PREFIX = "TRADESYNC_"


class CredentialVault(Protocol):
    def get_credentials(self, user_id: str, provider: str) -> BrokerCredentials: ...

    def has(self, user_id: str, provider: str) -> bool: ...


class EnvCredentialVault:
    """Environment variables: `TRADESYNC_<PROVIDER>_API_KEY` / `_API_SECRET` / `_ENVIRONMENT`.

    Single-tenant: every user shares the process environment. Any other
    `TRADESYNC_<PROVIDER>_<NAME>` variable lands in `extra` under `name`
    lowercased (e.g. Tradovate's `CID` / `SEC`).
    """

    _RESERVED = ("API_KEY", "API_SECRET", "ENVIRONMENT")

    def __init__(self, environ: Mapping[str, str] | None = None, *, prefix: str = ENV_PREFIX) -> None:
        self._environ = environ if environ is not None else os.environ
        self.prefix = prefix

    def _name(self, provider: str, field: str) -> str:
        return f"{self.prefix}{provider.upper()}_{field}"

    def has(self, user_id: str, provider: str) -> bool:
        return bool(self._environ.get(self._name(provider, "API_KEY")))

    def get_credentials(self, user_id: str, provider: str) -> BrokerCredentials:
        key = self._environ.get(self._name(provider, "API_KEY"))
        if not key:
            raise AuthError(f"no credentials for {provider}: set {self._name(provider, 'API_KEY')}", provider=provider)
        head = f"{self.prefix}{provider.upper()}_"
        extra = {
            k[len(head) :].lower(): v
            for k, v in self._environ.items()
            if k.startswith(head) and k[len(head) :] not in self._RESERVED
        }
        return BrokerCredentials(
            api_key=key,
            api_secret=self._environ.get(self._name(provider, "API_SECRET"), ""),
            environment=self._environ.get(self._name(provider, "ENVIRONMENT")) or None,
            extra=extra,
        )


class StaticCredentialVault:
    """In-memory vault keyed by (user_id, provider)."""

    def __init__(self, entries: Mapping[tuple[str, str], BrokerCredentials] | None = None) -> None:
        self._entries: dict[tuple[str, str], BrokerCredentials] = dict(entries or {})

    def put(self, user_id: str, provider: str, credentials: BrokerCredentials) -> None:
        self._entries[(user_id, provider)] = credentials

    def has(self, user_id: str, provider: str) -> bool:
        return (user_id, provider) in self._entries

    def get_credentials(self, user_id: str, provider: str) -> BrokerCredentials:
        try:
            return self._entries[(user_id, provider)]
        except KeyError:
            raise AuthError(f"no credentials for {provider}", provider=provider) from None
