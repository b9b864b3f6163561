"""tradesync.providers.http

Shared HTTP client for every adapter, with:
- rate limiting, retries and circuit breaking (via ResilientExecutor)
- HTTP status -> error taxonomy
- response size and item caps

The goal is uniform behavior across vendors.
"""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from tradesync.core.exceptions import ApiError, AuthError, RateLimitError
from tradesync.core.redaction import redact_secrets
from tradesync.resilience.executor import CallResult, ResilientExecutor
from tradesync.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _retry_after_seconds(resp: httpx.Response, *, now: float | None = None) -> float | None:
    """Read `Retry-After` (seconds or HTTP date) or `X-RateLimit-Reset` (epoch seconds)."""

    n = time.time() if now is None else now
    ra = resp.headers.get("Retry-After")
    if ra:
        try:
            return max(0.0, float(ra))
        except ValueError:
            try:
                return max(0.0, parsedate_to_datetime(ra).timestamp() - n)
            except (TypeError, ValueError):
                pass
    reset = resp.headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - n)
        except ValueError:
            return None
    return None


def raise_for_status(provider: str, resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    body = redact_secrets(resp.text[:500]) if resp.content else ""
    if resp.status_code in (401, 403):
        raise AuthError(f"{provider}: authentication failed ({resp.status_code})", provider=provider, details=body)
    if resp.status_code == 429:
        raise RateLimitError(
            f"{provider}: rate limit exceeded",
            retry_after_seconds=_retry_after_seconds(resp),
            limit_type="upstream",
            provider=provider,
        )
    raise ApiError(
        f"{provider}: API error {resp.status_code}",
        status_code=resp.status_code,
        provider=provider,
        details=body,
    )


class ProviderHttpClient:
    def __init__(
        self,
        executor: ResilientExecutor,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.executor = executor
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ProviderHttpClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    @staticmethod
    def _enforce_max_bytes(provider: str, resp: httpx.Response, *, max_bytes: int) -> None:
        size = len(resp.content)
        if size > int(max_bytes):
            raise ApiError(f"{provider}: response_too_large:{size}", status_code=resp.status_code, provider=provider)

    @staticmethod
    def _enforce_max_items(provider: str, data: Any, *, max_items: int) -> None:
        if isinstance(data, list) and len(data) > int(max_items):
            raise ApiError(f"{provider}: response_too_many_items:{len(data)}", status_code=200, provider=provider)

    async def _send(self, provider: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{provider}: transport error: {type(e).__name__}", provider=provider) from e
        logger.debug(
            "provider_http",
            extra={"provider": provider, "method": method, "url": redact_secrets(url), "status": resp.status_code},
        )
        raise_for_status(provider, resp)
        return resp

    async def request_json(self, provider: str, method: str, url: str, **kwargs: Any) -> Any:
        """Request and parse JSON through the provider's resilience stack."""

        res = await self.call_json(provider, method, url, **kwargs)
        return res.value

    async def call_json(
        self,
        provider: str,
        method: str,
        url: str,
        *,
        user_id: str | None = None,
        cost: float = 1.0,
        policy: RetryPolicy | None = None,
        expected: type | tuple[type, ...] | None = None,
        max_bytes: int | None = None,
        max_items: int | None = None,
        **kwargs: Any,
    ) -> CallResult[Any]:
        """Like `request_json`, but keeps retry count and latency."""

        settings = self.executor.config.provider_settings(provider)
        cap_bytes = max_bytes if max_bytes is not None else settings.max_response_bytes
        cap_items = max_items if max_items is not None else settings.max_items

        async def _once() -> Any:
            resp = await self._send(provider, method, url, **kwargs)
            self._enforce_max_bytes(provider, resp, max_bytes=cap_bytes)
            try:
                data: Any = resp.json()
            except ValueError as e:
                raise ApiError(f"{provider}: invalid JSON", status_code=resp.status_code, provider=provider) from e
            if expected is not None and not isinstance(data, expected):
                raise ApiError(f"{provider}: response_schema_mismatch", status_code=resp.status_code, provider=provider)
            self._enforce_max_items(provider, data, max_items=cap_items)
            return data

        return await self.executor.call(provider, _once, user_id=user_id, cost=cost, policy=policy)
