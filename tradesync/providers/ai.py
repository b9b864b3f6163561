"""tradesync.providers.ai

AI vendors behind the same resilience stack as the brokers.

Each request is an ordinary `ProviderHttpClient` call, so it is rate limited
(with a token-cost estimate), retried and circuit-broken under the vendor's
own name. `AIGateway` chains the preferred and fallback vendors.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from tradesync.core.exceptions import ApiError, AuthError
from tradesync.core.types import AIResponse, ChatMessage
from tradesync.providers.base import AIAdapter, ProviderContext
from tradesync.providers.registry import create_provider, register
from tradesync.resilience.executor import FallbackResult
from tradesync.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


def estimate_cost(messages: Sequence[ChatMessage], max_tokens: int) -> float:
    """Rough token count: ~4 characters per token in, plus the output budget."""

    chars = sum(len(m.content) for m in messages)
    return float(chars // 4 + max_tokens)


@register("gemini", kind="ai")
class GeminiAdapter(AIAdapter):
    default_environment = "live"
    base_urls = {"live": "https://generativelanguage.googleapis.com/v1beta"}

    @staticmethod
    def build_body(messages: Sequence[ChatMessage], *, max_tokens: int, temperature: float) -> dict[str, Any]:
        system = [m.content for m in messages if m.role == "system"]
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"maxOutputTokens": int(max_tokens), "temperature": float(temperature)},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system)}]}
        return body

    async def generate(
        self,
        token: str,
        messages: list[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
        user_id: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> AIResponse:
        if not token:
            raise AuthError("gemini: missing API key", provider=self.name)
        res = await self.ctx.http.call_json(
            self.name,
            "POST",
            f"{self.base_url()}/models/{model}:generateContent",
            user_id=user_id,
            cost=estimate_cost(messages, max_tokens),
            policy=policy,
            expected=dict,
            headers={"x-goog-api-key": token, "Content-Type": "application/json"},
            json=self.build_body(messages, max_tokens=max_tokens, temperature=temperature),
        )
        data = res.value
        candidates = data.get("candidates") or []
        if not candidates:
            raise ApiError("gemini: response has no candidates", status_code=200, provider=self.name)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text", "")) for p in parts)
        meta = data.get("usageMetadata") or {}
        usage = {
            "prompt_tokens": int(meta.get("promptTokenCount", 0)),
            "completion_tokens": int(meta.get("candidatesTokenCount", 0)),
            "total_tokens": int(meta.get("totalTokenCount", 0)),
        }
        return AIResponse(
            content=text,
            provider=self.name,
            model=model,
            usage=usage,
            latency_ms=res.latency_ms,
            retries_attempted=res.retries_attempted,
        )


@register("openai", kind="ai")
class OpenAIAdapter(AIAdapter):
    default_environment = "live"
    base_urls = {"live": "https://api.openai.com/v1"}

    async def generate(
        self,
        token: str,
        messages: list[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
        user_id: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> AIResponse:
        if not token:
            raise AuthError("openai: missing API key", provider=self.name)
        res = await self.ctx.http.call_json(
            self.name,
            "POST",
            f"{self.base_url()}/chat/completions",
            user_id=user_id,
            cost=estimate_cost(messages, max_tokens),
            policy=policy,
            expected=dict,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json={
                "model": model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "max_tokens": int(max_tokens),
                "temperature": float(temperature),
            },
        )
        data = res.value
        choices = data.get("choices") or []
        if not choices:
            raise ApiError("openai: response has no choices", status_code=200, provider=self.name)
        content = (choices[0].get("message") or {}).get("content") or ""
        raw_usage = data.get("usage") or {}
        usage = {k: int(raw_usage.get(k, 0)) for k in ("prompt_tokens", "completion_tokens", "total_tokens")}
        return AIResponse(
            content=str(content),
            provider=self.name,
            model=str(data.get("model") or model),
            usage=usage,
            latency_ms=res.latency_ms,
            retries_attempted=res.retries_attempted,
        )


class AIGateway:
    """Preferred vendor first, then the fallback; open circuits are skipped."""

    def __init__(self, ctx: ProviderContext) -> None:
        self.ctx = ctx
        self.config = ctx.config.ai

    def chain(self) -> list[str]:
        names = [self.config.preferred_provider]
        if self.config.fallback_provider and self.config.fallback_provider not in names:
            names.append(self.config.fallback_provider)
        return names

    def _policy(self, provider: str) -> RetryPolicy:
        return RetryPolicy.from_config(self.ctx.config.retry_for(provider), enabled=self.config.enable_retry)

    async def generate(
        self,
        messages: list[ChatMessage],
        *,
        tokens: Mapping[str, str],
        user_id: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> FallbackResult[AIResponse]:
        """Raises `AllProvidersFailedError` naming every vendor tried."""

        executor = self.ctx.http.executor
        out_tokens = int(max_tokens if max_tokens is not None else self.config.max_tokens)
        temp = float(temperature if temperature is not None else self.config.temperature)

        def _bind(name: str) -> Any:
            adapter = create_provider(name, self.ctx)
            if not isinstance(adapter, AIAdapter):
                raise ApiError(f"{name} is not an AI provider", provider=name)

            async def _run() -> AIResponse:
                return await adapter.generate(
                    tokens.get(name, ""),
                    messages,
                    model=self.config.models.get(name, ""),
                    max_tokens=out_tokens,
                    temperature=temp,
                    user_id=user_id,
                    policy=self._policy(name),
                )

            return _run

        chain = self.chain()
        result = await executor.call_with_fallback(
            chain,
            {name: _bind(name) for name in chain},
            user_id=user_id,
            wrap=False,
        )
        if result.fallback_used:
            logger.warning(
                "ai_fallback_used",
                extra={"primary": result.primary_provider, "actual": result.actual_provider},
            )
        return result
