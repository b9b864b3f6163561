"""tradesync.providers.alpaca

Alpaca (stocks). The orders feed only exposes filled orders, so each filled
order becomes one `Fill` and the shared matcher rebuilds round trips.

The "access token" is a JSON blob of key, secret and environment; Alpaca
authenticates every request with key headers.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from tradesync.core.exceptions import AuthError
from tradesync.core.time import parse_dt, utc_now
from tradesync.core.types import AuthResult, BrokerAccount, BrokerCredentials, Fill, Side
from tradesync.providers.base import BrokerAdapter, TradeBatch, parse_json_token, to_float
from tradesync.providers.registry import register

PAGE_LIMIT = 500


@register("alpaca", kind="broker")
class AlpacaAdapter(BrokerAdapter):
    default_environment = "paper"
    base_urls = {
        "paper": "https://paper-api.alpaca.markets",
        "live": "https://api.alpaca.markets",
    }

    @staticmethod
    def _headers(api_key: str, api_secret: str) -> dict[str, str]:
        return {
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": api_secret,
            "Accept": "application/json",
        }

    def _unpack(self, token: str) -> tuple[str, str, str]:
        data = parse_json_token(token, provider=self.name)
        key, secret = data.get("api_key"), data.get("api_secret")
        if not key or not secret:
            raise AuthError("alpaca: token missing key or secret", provider=self.name)
        return str(key), str(secret), self.environment_for(data.get("environment"))

    async def authenticate(self, credentials: BrokerCredentials, *, user_id: str | None = None) -> AuthResult:
        env = self.environment_for(credentials.environment)
        account = await self._get(
            f"{self.base_url(env)}/v2/account",
            user_id=user_id,
            headers=self._headers(credentials.api_key, credentials.api_secret),
            expected=dict,
        )
        token = json.dumps({"api_key": credentials.api_key, "api_secret": credentials.api_secret, "environment": env})
        # Key pairs do not expire; re-validate yearly.
        return AuthResult(
            access_token=token,
            expires_at=utc_now() + timedelta(days=365),
            broker_user_id=str(account.get("id") or ""),
        )

    async def get_accounts(self, token: str, *, user_id: str | None = None) -> list[BrokerAccount]:
        key, secret, env = self._unpack(token)
        account = await self._get(
            f"{self.base_url(env)}/v2/account", user_id=user_id, headers=self._headers(key, secret), expected=dict
        )
        number = str(account.get("account_number") or account.get("id") or "")
        return [
            BrokerAccount(
                id=number,
                name=f"Alpaca {number} ({env})",
                balance=to_float(account.get("equity"), 0.0),
                currency=account.get("currency"),
            )
        ]

    async def fetch_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> TradeBatch:
        key, secret, env = self._unpack(token)
        # No `after` bound: a window cut at `since` loses the opens of positions it closes.
        params: dict[str, Any] = {"status": "closed", "limit": str(PAGE_LIMIT), "direction": "desc"}

        orders = await self._get(
            f"{self.base_url(env)}/v2/orders",
            user_id=user_id,
            headers=self._headers(key, secret),
            params=params,
            expected=list,
        )
        fills = [f for f in (self.order_to_fill(o, account_id) for o in orders) if f is not None]
        return self.reconstruct(fills, fills_seen=len(orders), since=since, truncated=len(orders) >= PAGE_LIMIT)

    @staticmethod
    def order_to_fill(order: dict[str, Any], account_id: str | None) -> Fill | None:
        if order.get("status") != "filled" or not order.get("filled_at"):
            return None
        qty = to_float(order.get("filled_qty"))
        price = to_float(order.get("filled_avg_price"))
        if qty <= 0:
            return None
        return Fill.create(
            provider_fill_id=str(order.get("id")),
            account_id=account_id,
            symbol=str(order.get("symbol", "")).upper(),
            side=Side.BUY if str(order.get("side", "")).lower() == "buy" else Side.SELL,
            size=qty,
            price=price,
            timestamp=parse_dt(str(order["filled_at"])),
            fee_amount=to_float(order.get("commission")),
        )
