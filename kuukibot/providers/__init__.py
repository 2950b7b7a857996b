"""LLM provider abstraction module."""

from kuukibot.providers.base import LLMProvider, LLMResponse
from kuukibot.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
