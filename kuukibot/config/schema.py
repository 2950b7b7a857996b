"""Configuration schema using Pydantic."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from kuukibot.utils.helpers import convert_keys, deep_merge


class GateConfig(BaseModel):
    """Response gate knobs (cooldown, rate limits, response probability)."""
    cooldown_ms: int = 3000  # Min gap between two random/organic responses
    group_rate_limit: int = 100  # Messages per minute per conversation
    user_rate_limit: int = 50  # Messages per minute per user
    trigger_words: list[str] = Field(default_factory=list)
    ignore_words: list[str] = Field(default_factory=list)
    rate_min: float = 0.05
    rate_max: float = 1.0
    initial_rate: float = 0.1
    decay_rate_per_minute: float = 0.1
    tick_interval_ms: int = 10_000
    mention_mult: float = 0.1  # Rate bump per mention
    trigger_mult: float = 0.1  # Rate bump per trigger word

    @model_validator(mode="after")
    def _check_rate_bounds(self) -> "GateConfig":
        if not 0.0 <= self.rate_min <= self.rate_max <= 1.0:
            raise ValueError(
                f"rate bounds must satisfy 0 <= rate_min <= rate_max <= 1 "
                f"(got {self.rate_min}, {self.rate_max})"
            )
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        return self


class BackendConfig(BaseModel):
    """Language-model backend configuration."""
    model: str = "openai/gpt-4o-mini"
    fallback_models: list[str] = Field(default_factory=list)
    api_key: str = ""
    api_base: str | None = None
    max_tokens: int = 2000
    temperature: float = 0.7
    timeout: float = 45.0  # Seconds per backend call


class PipelineConfig(BaseModel):
    """Action pipeline and scheduler knobs."""
    interrupt_timeout_ms: int = 5000  # A newer message may interrupt a run this young
    max_retry_count: int = 2
    max_stack_depth: int = 2  # Max nested search continuations
    context_window: int = 25  # Messages before/after the trigger message
    similar_limit: int = 10
    similar_time_window: str = "7 days"
    history_token_budget: int | None = None  # Trim oldest history past this
    reply_rate_boost: float = 0.05
    skip_rate_penalty: float = 0.05
    memo_conversation_id: str | None = None  # Mirror raw responses here
    enable_memo: bool = False
    blacklist_users: list[str] = Field(default_factory=list)
    debug: bool = False
    log_dir: str = "~/.kuukibot/logs"

    @field_validator("memo_conversation_id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        return str(v) if v is not None else None

    @field_validator("blacklist_users", mode="before")
    @classmethod
    def _ids_to_str(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(x) for x in v]
        return v


class AgentConfig(BaseModel):
    """Effective configuration for one conversation."""
    gate: GateConfig = Field(default_factory=GateConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    system_prompt: str = ""  # Empty → bundled default prompt
    extra_prompt: str = ""  # Appended after the task block


class ConversationEntry(BaseModel):
    """A configured conversation and its overrides."""
    id: str
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        return str(v)


class CollectionConfig(BaseModel):
    """A group of conversations sharing overrides."""
    id: str = "default"
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    conversations: list[ConversationEntry] = Field(default_factory=list)


class Config(BaseModel):
    """Root configuration: base settings plus per-collection/conversation overrides."""
    base: AgentConfig = Field(default_factory=AgentConfig)
    collections: list[CollectionConfig] = Field(default_factory=list)
    require_known_conversations: bool = False  # Ignore conversations not listed

    def find_conversation(
        self, conversation_id: str,
    ) -> tuple[CollectionConfig, ConversationEntry] | None:
        for collection in self.collections:
            for conv in collection.conversations:
                if conv.id == str(conversation_id):
                    return collection, conv
        return None

    def for_conversation(self, conversation_id: str) -> AgentConfig | None:
        """Merge base ← collection ← conversation for one conversation.

        Returns None for unlisted conversations when
        ``require_known_conversations`` is set, else the base config.
        """
        found = self.find_conversation(conversation_id)
        if found is None:
            if self.require_known_conversations:
                return None
            return self.base.model_copy(deep=True)
        collection, conv = found
        merged = deep_merge(
            self.base.model_dump(),
            convert_keys(collection.config),
            convert_keys(conv.config),
        )
        return AgentConfig.model_validate(merged)
