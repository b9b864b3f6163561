"""tradesync.providers.tradovate

Tradovate (futures). Raw fills from `/fill/list`, symbols resolved through
`/contract/item`, round trips rebuilt by the shared matcher.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from tradesync import __version__
from tradesync.core.exceptions import AuthError
from tradesync.core.time import parse_dt
from tradesync.core.types import AuthResult, BrokerAccount, BrokerCredentials, Fill, Side
from tradesync.providers.base import BrokerAdapter, TradeBatch, parse_json_token, to_float
from tradesync.providers.registry import register

APP_ID = "tradesync"


@register("tradovate", kind="broker")
class TradovateAdapter(BrokerAdapter):
    default_environment = "demo"
    base_urls = {
        "demo": "https://demo.tradovateapi.com/v1",
        "live": "https://live.tradovateapi.com/v1",
    }

    def _unpack(self, token: str) -> tuple[str, str]:
        data = parse_json_token(token, provider=self.name)
        access = data.get("access_token")
        if not access:
            raise AuthError("tradovate: token missing access_token", provider=self.name)
        return str(access), self.environment_for(data.get("environment"))

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def authenticate(self, credentials: BrokerCredentials, *, user_id: str | None = None) -> AuthResult:
        env = self.environment_for(credentials.environment)
        payload: dict[str, Any] = {
            "name": credentials.api_key,
            "password": credentials.api_secret,
            "appId": credentials.extra.get("app_id", APP_ID),
            "appVersion": __version__,
        }
        if credentials.extra.get("cid"):
            payload["cid"] = int(credentials.extra["cid"])
        if credentials.extra.get("sec"):
            payload["sec"] = credentials.extra["sec"]

        data = await self._post(
            f"{self.base_url(env)}/auth/accesstokenrequest",
            user_id=user_id,
            json=payload,
            headers={"Accept": "application/json"},
            expected=dict,
        )
        if data.get("errorText") or not data.get("accessToken"):
            raise AuthError(f"tradovate: auth failed: {data.get('errorText') or 'no token'}", provider=self.name)

        expires = data.get("expirationTime")
        return AuthResult(
            access_token=json.dumps({"access_token": data["accessToken"], "environment": env}),
            expires_at=parse_dt(str(expires)) if expires else None,
            broker_user_id=str(data["userId"]) if data.get("userId") is not None else None,
        )

    async def get_accounts(self, token: str, *, user_id: str | None = None) -> list[BrokerAccount]:
        access, env = self._unpack(token)
        rows = await self._get(
            f"{self.base_url(env)}/account/list", user_id=user_id, headers=self._headers(access), expected=list
        )
        return [
            BrokerAccount(id=str(a["id"]), name=str(a.get("name") or a["id"]), currency="USD")
            for a in rows
            if a.get("active") and not a.get("archived")
        ]

    async def fetch_trades(
        self,
        token: str,
        account_id: str,
        since: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> TradeBatch:
        access, env = self._unpack(token)
        base = self.base_url(env)
        raw = await self._get(f"{base}/fill/list", user_id=user_id, headers=self._headers(access), expected=list)

        relevant: list[dict[str, Any]] = []
        for f in raw:
            if not f.get("active", True):
                continue
            if f.get("accountId") is not None and str(f["accountId"]) != str(account_id):
                continue
            relevant.append(f)

        # Cached per call only; adapters keep no state between calls.
        symbols: dict[int, str] = {}
        for cid in sorted({int(f["contractId"]) for f in relevant}):
            symbols[cid] = await self._contract_name(base, access, cid, user_id=user_id)

        fills = [
            Fill.create(
                provider_fill_id=str(f["id"]),
                account_id=account_id,
                symbol=symbols[int(f["contractId"])],
                side=Side.BUY if str(f.get("action")).lower() == "buy" else Side.SELL,
                size=to_float(f.get("qty")),
                price=to_float(f.get("price")),
                timestamp=parse_dt(str(f["timestamp"])),
                sequence=int(f["id"]) if str(f.get("id", "")).isdigit() else None,
            )
            for f in relevant
            if to_float(f.get("qty")) > 0
        ]
        return self.reconstruct(fills, fills_seen=len(raw), since=since)

    async def _contract_name(self, base: str, access: str, contract_id: int, *, user_id: str | None) -> str:
        contract = await self._get(
            f"{base}/contract/item",
            user_id=user_id,
            headers=self._headers(access),
            params={"id": contract_id},
        )
        if isinstance(contract, dict) and contract.get("name"):
            return str(contract["name"]).upper()
        return f"CONTRACT_{contract_id}"
