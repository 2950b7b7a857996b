"""Base LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """Response from an LLM provider."""

    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    reasoning_content: str | None = None  # Thinking output, when the model exposes it
    model: str | None = None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"

    @property
    def full_text(self) -> str:
        """Reasoning followed by content, the way tag parsing sees it."""
        return (self.reasoning_content or "") + (self.content or "")


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Implementations should handle the specifics of each provider's API
    while maintaining a consistent interface.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model identifier (provider-specific).
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.

        Returns:
            LLMResponse with content. Failures come back with
            finish_reason="error" rather than raising.
        """

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
