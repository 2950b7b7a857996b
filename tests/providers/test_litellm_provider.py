"""Tests for LiteLLMProvider response parsing and fallback rotation."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from kuukibot.config.schema import BackendConfig
from kuukibot.providers.litellm_provider import LiteLLMProvider

MESSAGES = [{"role": "user", "content": "hi"}]


# ── Helpers ──────────────────────────────────────────────────────────────


def make_completion(content: str = "<chat____skip/>", reasoning: str | None = None, finish: str = "stop"):
    message = SimpleNamespace(content=content, reasoning_content=reasoning)
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish)], usage=usage)


def make_provider(**kwargs) -> LiteLLMProvider:
    kwargs.setdefault("default_model", "m1")
    return LiteLLMProvider(**kwargs)


# ── Parsing ──────────────────────────────────────────────────────────────


class TestChat:
    @pytest.mark.asyncio
    async def test_parses_response(self):
        provider = make_provider(api_key="k")
        mock = AsyncMock(return_value=make_completion("hello", reasoning="thinking"))
        with patch("kuukibot.providers.litellm_provider.acompletion", mock):
            response = await provider.chat(MESSAGES, max_tokens=100, temperature=0.2)

        assert response.content == "hello"
        assert response.reasoning_content == "thinking"
        assert response.full_text == "thinkinghello"
        assert response.usage["total_tokens"] == 15
        assert response.model == "m1"
        kwargs = mock.await_args.kwargs
        assert kwargs["model"] == "m1"
        assert kwargs["api_key"] == "k"
        assert kwargs["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_error_without_fallback(self):
        provider = make_provider()
        with patch("kuukibot.providers.litellm_provider.acompletion", AsyncMock(side_effect=RuntimeError("down"))):
            response = await provider.chat(MESSAGES)
        assert response.is_error
        assert "m1" in response.content

    def test_from_config(self):
        provider = LiteLLMProvider.from_config(
            BackendConfig(model="m1", fallback_models=["m2"], timeout=5.0),
        )
        assert provider.get_default_model() == "m1"
        assert provider._fallback_models == ["m1", "m2"]
        assert provider._timeout == 5.0


# ── Fallback rotation ────────────────────────────────────────────────────


class TestFallback:
    @pytest.mark.asyncio
    async def test_exception_rotates_and_retries(self):
        provider = make_provider(fallback_models=["m1", "m2"])
        mock = AsyncMock(side_effect=[RuntimeError("API error"), make_completion("ok")])
        with patch("kuukibot.providers.litellm_provider.acompletion", mock):
            response = await provider.chat(MESSAGES)

        assert response.content == "ok"
        assert response.model == "m2"
        assert [c.kwargs["model"] for c in mock.await_args_list] == ["m1", "m2"]
        assert provider._get_current_model("m1") == "m2"

    @pytest.mark.asyncio
    async def test_timeout_rotates(self):
        provider = make_provider(fallback_models=["m1", "m2", "m3"], timeout=0.05)

        async def slow(**kwargs):
            if kwargs["model"] == "m1":
                await asyncio.sleep(10)
            return make_completion("late but fine")

        with patch("kuukibot.providers.litellm_provider.acompletion", slow):
            response = await provider.chat(MESSAGES)

        assert response.content == "late but fine"
        assert provider._get_current_model("m1") == "m2"

    @pytest.mark.asyncio
    async def test_both_fail_returns_error_response(self):
        provider = make_provider(fallback_models=["m1", "m2"])
        with patch("kuukibot.providers.litellm_provider.acompletion", AsyncMock(side_effect=RuntimeError("nope"))):
            response = await provider.chat(MESSAGES)
        assert response.finish_reason == "error"
        assert provider._model_failures == {"m1": 1, "m2": 1}

    @pytest.mark.asyncio
    async def test_recovery_probe_returns_to_primary(self):
        provider = make_provider(fallback_models=["m1", "m2"])
        provider._model_index = 1
        provider._last_rotation_time = 0.0
        provider._last_recovery_attempt = 0.0
        mock = AsyncMock(return_value=make_completion("back"))
        with patch("kuukibot.providers.litellm_provider.acompletion", mock):
            response = await provider.chat(MESSAGES)

        assert response.content == "back"
        assert provider._model_index == 0
        assert mock.await_args.kwargs["model"] == "m1"
