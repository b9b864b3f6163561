from __future__ import annotations

import json

import httpx
import pytest

from tradesync.core.exceptions import AuthError
from tradesync.core.types import BrokerCredentials, Direction
from tradesync.providers import create_provider
from tests.unit._helpers import Router, json_body, make_runtime, ts

TOKEN = json.dumps({"access_token": "tok-1", "environment": "demo"})

CONTRACTS = {1: "esh4", 2: None}


def _contract(request: httpx.Request) -> httpx.Response:
    cid = int(request.url.params["id"])
    name = CONTRACTS.get(cid)
    return httpx.Response(200, json={"id": cid, "name": name} if name else {"id": cid})


def _fill(fid: int, account: int, contract: int, action: str, qty: int, price: float, at: str, **kw: object) -> dict:
    row = {
        "id": fid,
        "accountId": account,
        "contractId": contract,
        "action": action,
        "qty": qty,
        "price": price,
        "timestamp": at,
        "active": True,
    }
    row.update(kw)
    return row


@pytest.mark.anyio
async def test_authenticate_posts_credentials_and_app_fields(router: Router) -> None:
    router.add(
        "POST",
        "/v1/auth/accesstokenrequest",
        {"accessToken": "tok-1", "expirationTime": "2024-03-01T16:00:00Z", "userId": 42},
    )
    creds = BrokerCredentials(api_key="trader", api_secret="pw", extra={"cid": "8", "sec": "shh"})

    async with make_runtime(router) as rt:
        auth = await create_provider("tradovate", rt.ctx).authenticate(creds)

    body = json_body(router.calls("/v1/auth/accesstokenrequest")[0])
    assert body["name"] == "trader"
    assert body["cid"] == 8
    assert body["appId"] == "tradesync"
    assert json.loads(auth.access_token) == {"access_token": "tok-1", "environment": "demo"}
    assert auth.expires_at == ts("2024-03-01T16:00:00")
    assert auth.broker_user_id == "42"


@pytest.mark.anyio
async def test_error_text_is_an_auth_error(router: Router) -> None:
    router.add("POST", "/v1/auth/accesstokenrequest", {"errorText": "Incorrect username or password"})

    async with make_runtime(router) as rt:
        with pytest.raises(AuthError, match="Incorrect username"):
            await create_provider("tradovate", rt.ctx).authenticate(BrokerCredentials("trader", "bad"))


@pytest.mark.anyio
async def test_get_accounts_skips_inactive_and_archived(router: Router) -> None:
    router.add(
        "GET",
        "/v1/account/list",
        [
            {"id": 7, "name": "DEMO7", "active": True, "archived": False},
            {"id": 8, "name": "DEMO8", "active": False},
            {"id": 9, "name": "DEMO9", "active": True, "archived": True},
        ],
    )

    async with make_runtime(router) as rt:
        accounts = await create_provider("tradovate", rt.ctx).get_accounts(TOKEN)

    assert [a.id for a in accounts] == ["7"]
    assert router.calls("/v1/account/list")[0].headers["Authorization"] == "Bearer tok-1"


@pytest.mark.anyio
async def test_fetch_trades_filters_account_and_resolves_contracts(router: Router) -> None:
    router.add(
        "GET",
        "/v1/fill/list",
        [
            _fill(101, 7, 1, "Buy", 2, 5000.0, "2024-03-01T14:30:00Z"),
            _fill(102, 7, 1, "Sell", 2, 5010.0, "2024-03-01T14:40:00Z"),
            _fill(103, 8, 1, "Buy", 1, 5000.0, "2024-03-01T14:31:00Z"),
            _fill(104, 7, 1, "Buy", 1, 4990.0, "2024-03-01T14:32:00Z", active=False),
            _fill(105, 7, 2, "Sell", 1, 20.0, "2024-03-01T14:50:00Z"),
            _fill(106, 7, 2, "Buy", 1, 19.0, "2024-03-01T14:55:00Z"),
        ],
    )
    router.add("GET", "/v1/contract/item", _contract)

    async with make_runtime(router) as rt:
        batch = await create_provider("tradovate", rt.ctx).fetch_trades(TOKEN, "7")

    assert batch.fills_seen == 6
    assert sorted(t.symbol for t in batch.trades) == ["CONTRACT_2", "ESH4"]
    es = next(t for t in batch.trades if t.symbol == "ESH4")
    assert es.direction is Direction.LONG
    assert es.quantity == pytest.approx(2)
    assert es.realized_pnl == pytest.approx(20)
    assert es.account_id == "7"
    other = next(t for t in batch.trades if t.symbol == "CONTRACT_2")
    assert other.direction is Direction.SHORT
    # One lookup per distinct contract.
    assert len(router.calls("/v1/contract/item")) == 2


@pytest.mark.anyio
async def test_fetch_trades_honours_since(router: Router) -> None:
    router.add(
        "GET",
        "/v1/fill/list",
        [
            _fill(90, 7, 1, "Buy", 1, 4990.0, "2024-01-10T14:30:00Z"),
            _fill(91, 7, 1, "Sell", 1, 4995.0, "2024-01-10T14:35:00Z"),
            _fill(101, 7, 1, "Buy", 1, 5000.0, "2024-02-01T14:30:00Z"),
            _fill(201, 7, 1, "Sell", 1, 5010.0, "2024-03-01T14:30:00Z"),
            _fill(202, 7, 1, "Buy", 1, 5005.0, "2024-03-01T14:35:00Z"),
            _fill(203, 7, 1, "Sell", 1, 5002.0, "2024-03-01T14:40:00Z"),
        ],
    )
    router.add("GET", "/v1/contract/item", _contract)

    async with make_runtime(router) as rt:
        batch = await create_provider("tradovate", rt.ctx).fetch_trades(TOKEN, "7", since=ts("2024-03-01T00:00:00"))

    # January's trade closed before the window; February's buy is the open of 201.
    assert [(t.direction, t.provider_trade_id, t.realized_pnl) for t in batch.trades] == [
        (Direction.LONG, "101", pytest.approx(10)),
        (Direction.LONG, "202", pytest.approx(-3)),
    ]
    assert batch.anomalies == []


@pytest.mark.anyio
async def test_live_environment_from_token(router: Router) -> None:
    router.add("GET", "/v1/fill/list", [])
    token = json.dumps({"access_token": "tok-1", "environment": "live"})

    async with make_runtime(router) as rt:
        batch = await create_provider("tradovate", rt.ctx).fetch_trades(token, "7")

    assert batch.trades == []
    assert router.calls("/v1/fill/list")[0].url.host == "live.tradovateapi.com"
