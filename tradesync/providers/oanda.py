"""tradesync.providers.oanda

OANDA (FX). The transactions feed already carries round-trip semantics: an
ORDER_FILL can open a trade (`tradeOpened`), reduce one (`tradeReduced`) or
close one or more (`tradesClosed`). Reductions and closes become partial exits
of the OANDA trade they reference, so the shared matcher is not needed here.

OANDA reports realized P/L, not an exit price; the exit price is derived as
entry +/- realizedPL / units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tradesync.core.exceptions import AuthError, ReconstructionAnomaly
from tradesync.core.time import ensure_utc, parse_dt
from tradesync.core.types import (
    AuthResult,
    BrokerAccount,
    BrokerCredentials,
    Direction,
    PartialExit,
    RoundTripTrade,
)
from tradesync.providers.base import BrokerAdapter, TradeBatch, to_float
from tradesync.providers.registry import register


def normalize_symbol(instrument: str) -> str:
    return instrument.replace("_", "").upper()


@dataclass(slots=True)
class _OpenTrade:
    trade_id: str
    instrument: str
    units: float  # signed
    entry_price: float
    opened_at: datetime
    entry_fees: float
    exits: list[PartialExit] = field(default_factory=list)


def _exit_fee(leg: dict[str, Any]) -> float:
    return abs(to_float(leg.get("guaranteedExecutionFee"))) + abs(to_float(leg.get("halfSpreadCost")))


@register("oanda", kind="broker")
class OandaAdapter(BrokerAdapter):
    default_environment = "practice"
    base_urls = {
        "practice": "https://api-fxpractice.oanda.com",
        "live": "https://api-fxtrade.oanda.com",
    }

    def _unpack(self, token: str) -> tuple[str, str]:
        # "<environment>:<api key>"; a bare key means the configured environment.
        env, sep, key = token.partition(":")
        if not sep:
            return token, self.environment_for(None)
        if not key:
            raise AuthError("oanda: token missing api key", provider=self.name)
        return key, self.environment_for(env)

    @staticmethod
    def _headers(key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {key}", "Accept-Datetime-Format": "RFC3339"}

    async def authenticate(self, credentials: BrokerCredentials, *, user_id: str | None = None) -> AuthResult:
        env = self.environment_for(credentials.environment)
        data = await self._get(
            f"{self.base_url(env)}/v3/accounts",
            user_id=user_id,
            headers=self._headers(credentials.api_key),
            expected=dict,
        )
        accounts = data.get("accounts") or []
        if not accounts:
            raise AuthError("oanda: no accounts found for this API key", provider=self.name)
        return AuthResult(
            access_token=f"{env}:{credentials.api_key}",
            expires_at=None,
            broker_user_id=str(accounts[0].get("id")),
        )

    async def get_accounts(self, token: str, *, user_id: str | None = None) -> list[BrokerAccount]:
        key, env = self._unpack(token)
        base = self.base_url(env)
        data = await self._get(f"{base}/v3/accounts", user_id=user_id, headers=self._headers(key), expected=dict)
        out: list[BrokerAccount] = []
        for a in data.get("accounts") or []:
            details = await self._get(
                f"{base}/v3/accounts/{a['id']}", user_id=user_id, headers=self._headers(key), expected=dict
            )
            acct = details.get("account") or {}
            out.append(
                BrokerAccount(
                    id=str(acct.get("id") or a["id"]),
                    name=str(acct.get("alias") or f"OANDA {a['id']}"),
                    balance=to_float(acct.get("balance")),
                    currency=acct.get("currency"),
                )
            )
        return out

    async def fetch_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> TradeBatch:
        key, env = self._unpack(token)
        params: dict[str, Any] = {"type": "ORDER_FILL"}
        if since is not None:
            params["from"] = ensure_utc(since).isoformat()
        data = await self._get(
            f"{self.base_url(env)}/v3/accounts/{account_id}/transactions",
            user_id=user_id,
            headers=self._headers(key),
            params=params,
            expected=dict,
        )
        txs = data.get("transactions") or []
        return self.transactions_to_trades(txs, account_id)

    def transactions_to_trades(self, transactions: list[dict[str, Any]], account_id: str | None) -> TradeBatch:
        open_trades: dict[str, _OpenTrade] = {}
        trades: list[RoundTripTrade] = []
        anomalies: list[ReconstructionAnomaly] = []

        def _anomaly(kind: str, detail: str, *, severity: str, symbol: str | None, fill_id: str | None) -> None:
            a = ReconstructionAnomaly(
                kind, detail, severity=severity, account_id=account_id, symbol=symbol, fill_id=fill_id
            )
            anomalies.append(a)
            self.ctx.sink.emit("reconstruction_anomaly", provider=self.name, **a.as_dict())

        def _apply_exit(tx: dict[str, Any], leg: dict[str, Any], *, closes: bool) -> None:
            trade_id = str(leg.get("tradeID"))
            ot = open_trades.get(trade_id)
            if ot is None:
                _anomaly(
                    "unmatched_close",
                    f"OANDA trade {trade_id} closed but its open is outside the fetched window",
                    severity="warning",
                    symbol=normalize_symbol(str(tx.get("instrument", ""))) or None,
                    fill_id=str(tx.get("id")),
                )
                return
            units = abs(to_float(leg.get("units")))
            if units <= 0:
                return
            pl = to_float(leg.get("realizedPL"))
            sign = 1 if ot.units > 0 else -1
            exit_price = ot.entry_price + sign * (pl / units)
            fee = _exit_fee(leg) + abs(to_float(leg.get("financing")))
            ot.exits.append(
                PartialExit(exited_at=parse_dt(str(tx["time"])), exit_price=exit_price, quantity=units, pnl=pl, fee=fee)
            )
            if closes:
                trades.append(self._finalise(ot, account_id))
                del open_trades[trade_id]

        ordered = sorted(transactions, key=lambda t: (parse_dt(str(t["time"])), int(t.get("id", 0) or 0)))
        for tx in ordered:
            if tx.get("type") != "ORDER_FILL":
                continue
            opened = tx.get("tradeOpened")
            if opened:
                open_trades[str(opened["tradeID"])] = _OpenTrade(
                    trade_id=str(opened["tradeID"]),
                    instrument=str(tx.get("instrument", "")),
                    units=to_float(opened.get("units")),
                    entry_price=to_float(opened.get("price")),
                    opened_at=parse_dt(str(tx["time"])),
                    entry_fees=_exit_fee(opened),
                )
            reduced = tx.get("tradeReduced")
            if reduced:
                _apply_exit(tx, reduced, closes=False)
            for closed in tx.get("tradesClosed") or []:
                _apply_exit(tx, closed, closes=True)

        for ot in open_trades.values():
            _anomaly(
                "open_position",
                f"OANDA trade {ot.trade_id} still open at end of feed",
                severity="info",
                symbol=normalize_symbol(ot.instrument),
                fill_id=ot.trade_id,
            )

        trades.sort(key=lambda t: (t.closed_at, t.symbol))
        return TradeBatch(trades=trades, anomalies=anomalies, fills_seen=len(transactions))

    @staticmethod
    def _finalise(ot: _OpenTrade, account_id: str | None) -> RoundTripTrade:
        exits = tuple(ot.exits)
        qty = sum(e.quantity for e in exits)
        return RoundTripTrade(
            account_id=account_id,
            symbol=normalize_symbol(ot.instrument),
            direction=Direction.LONG if ot.units > 0 else Direction.SHORT,
            opened_at=ot.opened_at,
            closed_at=max(e.exited_at for e in exits),
            entry_price=ot.entry_price,
            exit_price=sum(e.quantity * e.exit_price for e in exits) / qty,
            quantity=qty,
            realized_pnl=sum(e.pnl for e in exits),
            fees=ot.entry_fees + sum(e.fee for e in exits),
            partial_exits=exits,
            provider_trade_id=ot.trade_id,
        )
