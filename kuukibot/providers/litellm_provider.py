"""LiteLLM provider implementation for multi-provider support.

Includes model fallback with rotation: on timeout or error, retries once
with the next model in the fallback list. While running on a fallback,
the primary model is re-probed after a cooldown.
"""

from __future__ import annotations

import asyncio
import time as _time
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from kuukibot.config.schema import BackendConfig
from kuukibot.providers.base import LLMProvider, LLMResponse

# Timeout for a single LLM call; keeps a hung provider from stalling the run
LLM_CALL_TIMEOUT: float = 45.0

# Recovery: how long to wait before probing primary model again after failure
RECOVERY_COOLDOWN: float = 300.0  # 5 minutes


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Model fallback: on timeout or error, rotates to the next model in the
    fallback list and retries once. If the retry also fails, returns an
    error response (finish_reason="error") instead of raising.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openai/gpt-4o-mini",
        extra_headers: dict[str, str] | None = None,
        fallback_models: list[str] | None = None,
        timeout: float = LLM_CALL_TIMEOUT,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self._timeout = timeout

        # Primary first, then fallbacks
        self._fallback_models = list(fallback_models or [])
        if self._fallback_models and self._fallback_models[0] != default_model:
            self._fallback_models.insert(0, default_model)
        self._model_index = 0
        self._model_failures: dict[str, int] = {}
        self._last_rotation_time: float = 0.0
        self._last_recovery_attempt: float = 0.0

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    @classmethod
    def from_config(cls, config: BackendConfig) -> "LiteLLMProvider":
        return cls(
            api_key=config.api_key or None,
            api_base=config.api_base,
            default_model=config.model,
            fallback_models=config.fallback_models,
            timeout=config.timeout,
        )

    # ── Model fallback rotation ──────────────────────────────────────

    def _get_current_model(self, requested_model: str) -> str:
        """Current model, applying fallback rotation if models are configured."""
        if not self._fallback_models:
            return requested_model
        return self._fallback_models[self._model_index % len(self._fallback_models)]

    def _rotate_model(self) -> None:
        """Rotate to next fallback model after failure."""
        if not self._fallback_models:
            return
        old_idx = self._model_index
        self._model_index = (self._model_index + 1) % len(self._fallback_models)
        self._last_rotation_time = _time.time()
        old_model = self._fallback_models[old_idx % len(self._fallback_models)]
        new_model = self._fallback_models[self._model_index]
        logger.warning(f"LLM fallback: rotated from {old_model} → {new_model}")

    def _record_failure(self, model: str) -> None:
        """Track consecutive failures per model."""
        self._model_failures[model] = self._model_failures.get(model, 0) + 1

    # ── Model recovery ───────────────────────────────────────────

    def _should_try_recovery(self) -> bool:
        """Probe the primary again only when on a fallback and both cooldowns elapsed."""
        if len(self._fallback_models) < 2:
            return False
        if self._model_index == 0:
            return False
        now = _time.time()
        if now - self._last_recovery_attempt < RECOVERY_COOLDOWN:
            return False
        if now - self._last_rotation_time < RECOVERY_COOLDOWN:
            return False
        return True

    async def _attempt_recovery(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse | None:
        """Use the real request as a probe of the primary model.

        On success, snaps back to the primary. On failure, stays on the
        current fallback and returns None.
        """
        self._last_recovery_attempt = _time.time()
        primary_model = self._fallback_models[0]
        current_model = self._fallback_models[self._model_index]

        logger.info(f"LLM recovery: probing primary {primary_model} (currently on {current_model})")

        try:
            response = await self._attempt_chat(primary_model, messages, max_tokens, temperature)
        except Exception as e:
            logger.info(
                f"LLM recovery: {primary_model} still down ({type(e).__name__}). "
                f"Staying on {current_model}."
            )
            return None

        self._model_index = 0
        self._model_failures[primary_model] = 0
        self._last_rotation_time = 0.0
        logger.info(f"LLM recovery: {primary_model} is back, switched from {current_model}")
        return response

    async def _attempt_chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        """Make a single LLM call with timeout. Raises on failure."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        response = await asyncio.wait_for(acompletion(**kwargs), timeout=self._timeout)
        return self._parse_response(response, model)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Send a chat completion request via LiteLLM with fallback rotation."""
        requested = model or self.default_model
        current_model = self._get_current_model(requested)

        if self._should_try_recovery():
            recovery_response = await self._attempt_recovery(messages, max_tokens, temperature)
            if recovery_response is not None:
                return recovery_response
            current_model = self._get_current_model(requested)

        try:
            result = await self._attempt_chat(current_model, messages, max_tokens, temperature)
            self._model_failures[current_model] = 0
            return result
        except asyncio.TimeoutError:
            logger.warning(f"LLM timeout after {self._timeout}s on {current_model}")
            self._record_failure(current_model)
            self._rotate_model()
        except Exception as e:
            logger.warning(f"LLM error on {current_model}: {e}")
            self._record_failure(current_model)
            self._rotate_model()

        fallback_model = self._get_current_model(requested)
        if fallback_model == current_model:
            return LLMResponse(
                content=f"Error calling LLM: {current_model} failed and no fallback is configured",
                finish_reason="error",
                model=current_model,
            )

        try:
            logger.info(f"LLM fallback retry with {fallback_model}")
            result = await self._attempt_chat(fallback_model, messages, max_tokens, temperature)
            self._model_failures[fallback_model] = 0
            return result
        except asyncio.TimeoutError:
            logger.error(f"LLM fallback also timed out on {fallback_model}")
            self._record_failure(fallback_model)
            self._rotate_model()
            return LLMResponse(
                content=f"Error calling LLM: timeout on both {current_model} and {fallback_model}",
                finish_reason="error",
                model=fallback_model,
            )
        except Exception as e:
            logger.error(f"LLM fallback also failed on {fallback_model}: {e}")
            self._record_failure(fallback_model)
            self._rotate_model()
            return LLMResponse(
                content=f"Error calling LLM: {e}",
                finish_reason="error",
                model=fallback_model,
            )

    def _parse_response(self, response: Any, model: str) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        reasoning_content = getattr(message, "reasoning_content", None) or getattr(message, "reasoning", None)

        return LLMResponse(
            content=message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=reasoning_content,
            model=model,
        )

    def get_default_model(self) -> str:
        return self.default_model
