from __future__ import annotations

import httpx
import pytest

from tradesync.core.exceptions import AllProvidersFailedError, ApiError, AuthError
from tradesync.core.types import ChatMessage
from tradesync.providers import create_provider
from tradesync.providers.ai import AIGateway, GeminiAdapter, estimate_cost
from tests.unit._helpers import Router, fast_config, json_body, make_runtime

GEMINI = "/v1beta/models/gemini-2.0-flash:generateContent"
OPENAI = "/v1/chat/completions"

MESSAGES = [
    ChatMessage("system", "Be brief."),
    ChatMessage("user", "Summarize my week."),
    ChatMessage("assistant", "Which account?"),
    ChatMessage("user", "All of them."),
]

GEMINI_OK = {
    "candidates": [{"content": {"parts": [{"text": "Green "}, {"text": "week."}]}}],
    "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 3, "totalTokenCount": 15},
}
OPENAI_OK = {
    "model": "gpt-4o-mini-2024",
    "choices": [{"message": {"role": "assistant", "content": "Mixed week."}}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
}
TOKENS = {"gemini": "g-key", "openai": "o-key"}


def test_estimate_cost() -> None:
    assert estimate_cost([ChatMessage("user", "x" * 400)], 100) == 200.0


def test_gemini_body_maps_roles() -> None:
    body = GeminiAdapter.build_body(MESSAGES, max_tokens=256, temperature=0.2)

    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["generationConfig"] == {"maxOutputTokens": 256, "temperature": 0.2}


@pytest.mark.anyio
async def test_gemini_generate(router: Router) -> None:
    router.add("POST", GEMINI, GEMINI_OK)

    async with make_runtime(router) as rt:
        adapter = create_provider("gemini", rt.ctx)
        out = await adapter.generate("g-key", MESSAGES, model="gemini-2.0-flash", max_tokens=64, temperature=0.5)

    req = router.calls(GEMINI)[0]
    assert req.headers["x-goog-api-key"] == "g-key"
    assert json_body(req)["generationConfig"]["maxOutputTokens"] == 64
    assert out.content == "Green week."
    assert out.provider == "gemini"
    assert out.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}


@pytest.mark.anyio
async def test_gemini_without_candidates_is_an_error(router: Router) -> None:
    router.add("POST", GEMINI, {"promptFeedback": {"blockReason": "SAFETY"}})

    async with make_runtime(router) as rt:
        with pytest.raises(ApiError, match="no candidates"):
            await create_provider("gemini", rt.ctx).generate(
                "g-key", MESSAGES, model="gemini-2.0-flash", max_tokens=64, temperature=0.5
            )


@pytest.mark.anyio
async def test_openai_generate(router: Router) -> None:
    router.add("POST", OPENAI, OPENAI_OK)

    async with make_runtime(router) as rt:
        out = await create_provider("openai", rt.ctx).generate(
            "o-key", MESSAGES, model="gpt-4o-mini", max_tokens=64, temperature=0.5
        )

    req = router.calls(OPENAI)[0]
    assert req.headers["Authorization"] == "Bearer o-key"
    body = json_body(req)
    assert body["model"] == "gpt-4o-mini"
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
    assert out.content == "Mixed week."
    assert out.model == "gpt-4o-mini-2024"
    assert out.usage["total_tokens"] == 12


@pytest.mark.anyio
async def test_empty_key_fails_before_any_request(router: Router) -> None:
    async with make_runtime(router) as rt:
        with pytest.raises(AuthError):
            await create_provider("openai", rt.ctx).generate("", MESSAGES, model="m", max_tokens=1, temperature=0)

    assert router.requests == []


@pytest.mark.anyio
async def test_gateway_uses_preferred_provider(router: Router) -> None:
    router.add("POST", GEMINI, GEMINI_OK)

    async with make_runtime(router) as rt:
        res = await AIGateway(rt.ctx).generate(MESSAGES, tokens=TOKENS, user_id="u1")

    assert res.value.content == "Green week."
    assert (res.primary_provider, res.actual_provider, res.fallback_used) == ("gemini", "gemini", False)
    assert router.calls(OPENAI) == []


@pytest.mark.anyio
async def test_gateway_falls_back_after_retries(router: Router) -> None:
    router.add("POST", GEMINI, {"error": "overloaded"}, status=503)
    router.add("POST", OPENAI, OPENAI_OK)

    async with make_runtime(router) as rt:
        res = await AIGateway(rt.ctx).generate(MESSAGES, tokens=TOKENS, user_id="u1")
        failed = rt.sink.events("provider_call_failed")

    assert res.fallback_used is True
    assert res.actual_provider == "openai"
    assert res.value.content == "Mixed week."
    assert len(router.calls(GEMINI)) == 4
    assert res.retries_attempted == 3
    assert [e.fields["provider"] for e in failed] == ["gemini"]
    assert set(res.health) == {"gemini", "openai"}


@pytest.mark.anyio
async def test_gateway_retry_switch(router: Router) -> None:
    router.add("POST", GEMINI, {"error": "overloaded"}, status=503)
    router.add("POST", OPENAI, OPENAI_OK)

    async with make_runtime(router, config=fast_config(ai={"enable_retry": False})) as rt:
        res = await AIGateway(rt.ctx).generate(MESSAGES, tokens=TOKENS)

    assert res.actual_provider == "openai"
    assert len(router.calls(GEMINI)) == 1


@pytest.mark.anyio
async def test_gateway_missing_key_falls_through(router: Router) -> None:
    router.add("POST", OPENAI, OPENAI_OK)

    async with make_runtime(router) as rt:
        res = await AIGateway(rt.ctx).generate(MESSAGES, tokens={"openai": "o-key"})

    assert res.actual_provider == "openai"
    assert router.calls(GEMINI) == []


@pytest.mark.anyio
async def test_gateway_all_failed(router: Router) -> None:
    router.add("POST", GEMINI, lambda _req: httpx.Response(500, text="boom"))
    router.add("POST", OPENAI, {"error": {"message": "bad key"}}, status=401)

    async with make_runtime(router) as rt:
        with pytest.raises(AllProvidersFailedError) as e:
            await AIGateway(rt.ctx).generate(MESSAGES, tokens=TOKENS)

    assert set(e.value.errors) == {"gemini", "openai"}
    assert isinstance(e.value.errors["openai"], AuthError)
    # Auth failures are not retried.
    assert len(router.calls(OPENAI)) == 1


@pytest.mark.anyio
async def test_gateway_without_fallback(router: Router) -> None:
    router.add("POST", GEMINI, GEMINI_OK)
    cfg = fast_config(ai={"fallback_provider": None})

    async with make_runtime(router, config=cfg) as rt:
        gw = AIGateway(rt.ctx)
        assert gw.chain() == ["gemini"]
        res = await gw.generate(MESSAGES, tokens=TOKENS)

    assert res.actual_provider == "gemini"
