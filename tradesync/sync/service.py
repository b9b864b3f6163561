"""tradesync.sync.service

Fetch -> reconstruct -> create-or-merge, for one linked broker account.

The scheduler is external: it calls `sync_provider` / `sync_batch` and gets
counts back. Failures are isolated twice over: a bad trade never aborts its
connection, and a bad connection never aborts the batch.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from tradesync.core.exceptions import AuthError, ConfigError, ReconstructionAnomaly, classify_error
from tradesync.core.observability import ObservabilitySink
from tradesync.core.time import ensure_utc, utc_now
from tradesync.core.types import (
    AuthResult,
    BatchSyncResult,
    BrokerConnection,
    MergeAction,
    RoundTripTrade,
    SyncResult,
)
from tradesync.journal.merge import MergeEngine
from tradesync.providers.base import BrokerAdapter, ProviderContext, TradeBatch
from tradesync.providers.registry import create_provider
from tradesync.sync.vault import CredentialVault

logger = logging.getLogger(__name__)


def is_sync_due(last_sync_at: datetime | None, interval: timedelta, now: datetime | None = None) -> bool:
    """True when a connection has never synced or its interval has elapsed."""

    if last_sync_at is None:
        return True
    current = ensure_utc(now) if now is not None else utc_now()
    return current >= ensure_utc(last_sync_at) + interval


class SyncService:
    def __init__(
        self,
        ctx: ProviderContext,
        merge: MergeEngine,
        vault: CredentialVault,
        *,
        sink: ObservabilitySink | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ctx = ctx
        self.merge = merge
        self.vault = vault
        self.sink = sink or ctx.sink
        self._now = now

    def _adapter(self, provider: str) -> BrokerAdapter:
        adapter = create_provider(provider, self.ctx)
        if not isinstance(adapter, BrokerAdapter):
            raise ConfigError(f"{provider} is not a broker provider")
        return adapter

    def token_expired(self, connection: BrokerConnection) -> bool:
        if not connection.access_token:
            return True
        if connection.token_expires_at is None:
            return False
        return ensure_utc(connection.token_expires_at) <= self._now()

    async def _authenticate(self, adapter: BrokerAdapter, connection: BrokerConnection) -> AuthResult:
        creds = self.vault.get_credentials(connection.user_id, connection.provider)
        auth = await adapter.authenticate(creds, user_id=connection.user_id)
        logger.info("broker_reauthenticated", extra={"provider": connection.provider, "user_id": connection.user_id})
        return auth

    async def _fetch(
        self,
        adapter: BrokerAdapter,
        connection: BrokerConnection,
        since: datetime | None,
    ) -> tuple[TradeBatch, AuthResult | None]:
        auth: AuthResult | None = None
        if self.token_expired(connection):
            auth = await self._authenticate(adapter, connection)
            token = auth.access_token
        else:
            token = str(connection.access_token)

        try:
            batch = await adapter.fetch_trades(token, connection.broker_account_id, since, user_id=connection.user_id)
        except AuthError:
            # A stored token the broker revoked early: one fresh login, then give up.
            if auth is not None or not self.vault.has(connection.user_id, connection.provider):
                raise
            auth = await self._authenticate(adapter, connection)
            batch = await adapter.fetch_trades(
                auth.access_token, connection.broker_account_id, since, user_id=connection.user_id
            )
        return batch, auth

    def _relabel(self, connection: BrokerConnection, trade: RoundTripTrade) -> RoundTripTrade:
        # Trades are filed under the journal account, not the broker's id for it.
        if connection.account_id is None or trade.account_id == connection.account_id:
            return trade
        return dataclasses.replace(trade, account_id=connection.account_id)

    async def sync_provider(
        self,
        connection: BrokerConnection,
        since: datetime | None = None,
        *,
        incremental: bool = False,
    ) -> SyncResult:
        """Sync one connection. Never raises for provider, auth or data errors.

        With ``incremental=True`` and no explicit ``since``, only trades closed
        at or after ``connection.last_sync_at`` are journaled; otherwise every
        reconstructed trade is offered and deduplication does the rest.
        """

        started = time.perf_counter()
        if since is None and incremental:
            since = connection.last_sync_at

        def _result(**kw: object) -> SyncResult:
            return SyncResult(
                provider=connection.provider,
                user_id=connection.user_id,
                broker_account_id=connection.broker_account_id,
                duration_ms=int((time.perf_counter() - started) * 1000),
                **kw,  # type: ignore[arg-type]
            )

        try:
            adapter = self._adapter(connection.provider)
            batch, auth = await self._fetch(adapter, connection, since)
        except Exception as e:  # noqa: BLE001 - per-connection boundary
            c = classify_error(e)
            anomalies = [e.as_dict()] if isinstance(e, ReconstructionAnomaly) else []
            self.sink.emit(
                "sync_failed",
                level=logging.WARNING,
                provider=connection.provider,
                user_id=connection.user_id,
                broker_account_id=connection.broker_account_id,
                error_type=c.type,
                error=str(e),
            )
            return _result(
                created=0,
                updated=0,
                skipped=0,
                errored=0,
                errors=[f"{c.type}: {c.user_message} ({e})"],
                anomalies=anomalies,
                success=False,
            )

        created = updated = skipped = errored = 0
        errors: list[str] = []
        for trade in batch.trades:
            candidate = self._relabel(connection, trade)
            try:
                outcome = self.merge.create_or_merge(connection.user_id, candidate)
            except Exception as e:  # noqa: BLE001 - per-trade boundary
                errored += 1
                errors.append(f"{candidate.symbol} {candidate.opened_at.isoformat()}: {type(e).__name__}: {e}")
                logger.warning(
                    "trade_merge_failed",
                    extra={"provider": connection.provider, "symbol": candidate.symbol, "error": str(e)},
                )
                continue
            if outcome.action is MergeAction.CREATED:
                created += 1
            elif outcome.action is MergeAction.UPDATED:
                updated += 1
            else:
                skipped += 1

        result = _result(
            created=created,
            updated=updated,
            skipped=skipped,
            errored=errored,
            errors=errors,
            anomalies=[a.as_dict() for a in batch.anomalies],
            success=errored == 0,
            auth_result=auth,
        )
        self.sink.emit(
            "sync_completed",
            provider=connection.provider,
            user_id=connection.user_id,
            broker_account_id=connection.broker_account_id,
            fills_seen=batch.fills_seen,
            trades=len(batch.trades),
            created=created,
            updated=updated,
            skipped=skipped,
            errored=errored,
            anomalies=len(batch.anomalies),
            duration_ms=result.duration_ms,
        )
        return result

    async def sync_batch(
        self,
        connections: Iterable[BrokerConnection],
        *,
        since: datetime | None = None,
        incremental: bool = False,
    ) -> BatchSyncResult:
        results: list[SyncResult] = []
        for conn in connections:
            results.append(await self.sync_provider(conn, since, incremental=incremental))
        return BatchSyncResult(results=results)

    def refreshed(self, connection: BrokerConnection, result: SyncResult) -> BrokerConnection:
        """The connection as the scheduler should store it after ``result``."""

        changes: dict[str, object] = {}
        if result.auth_result is not None:
            changes["access_token"] = result.auth_result.access_token
            changes["token_expires_at"] = result.auth_result.expires_at
        if result.success:
            changes["last_sync_at"] = self._now()
        return dataclasses.replace(connection, **changes) if changes else connection  # type: ignore[arg-type]
