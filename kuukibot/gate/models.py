"""Data models for the response gate.

Defines the Decision value, decision kinds, the mutable per-conversation
GateState and the constants the gate works with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from kuukibot.config.schema import GateConfig

# ── Timing constants (milliseconds) ─────────────────────────────────────
RATE_WINDOW_MS = 60_000  # Sliding window for rate limits
MS_PER_MINUTE = 60_000


class DecisionKind(str, Enum):
    """Why the gate decided to act (or not)."""
    PRIVATE = "private"
    MENTION = "mention"
    TRIGGER = "trigger"
    RANDOM = "random"
    NONE = "none"

    @property
    def is_priority(self) -> bool:
        """Priority kinds bypass cooldown and rate limits."""
        return self in (DecisionKind.PRIVATE, DecisionKind.MENTION, DecisionKind.TRIGGER)


@dataclass(frozen=True)
class Decision:
    """Outcome of one gate evaluation. Immutable once produced."""

    should_act: bool
    kind: DecisionKind
    scene: str  # Human-readable situation, injected into the task prompt

    @classmethod
    def reject(cls, scene: str) -> Decision:
        return cls(should_act=False, kind=DecisionKind.NONE, scene=scene)

    def to_dict(self) -> dict[str, object]:
        return {"should_act": self.should_act, "kind": self.kind.value, "scene": self.scene}


@dataclass
class InteractionStats:
    """Interaction counters accumulated between rate recomputations."""

    mention_count: int = 0
    trigger_word_count: int = 0
    last_interaction_at: int = 0  # ms

    def reset_counts(self) -> None:
        self.mention_count = 0
        self.trigger_word_count = 0

    @property
    def has_interactions(self) -> bool:
        return self.mention_count > 0 or self.trigger_word_count > 0


@dataclass
class DecayParams:
    """How fast the response rate rises on interaction and sinks in silence."""

    mention_mult: float = 0.1
    trigger_mult: float = 0.1
    decay_rate_per_minute: float = 0.1
    tick_interval_ms: int = 10_000


@dataclass
class GateState:
    """Mutable gate state for one conversation.

    Only the owning ResponseGate mutates this, always under its lock.
    """

    current_rate: float
    rate_min: float
    rate_max: float
    last_response_at: dict[str, int] = field(default_factory=dict)  # conversation → ms
    conversation_windows: dict[str, list[int]] = field(default_factory=dict)
    user_windows: dict[str, list[int]] = field(default_factory=dict)
    stats: InteractionStats = field(default_factory=InteractionStats)
    decay: DecayParams = field(default_factory=DecayParams)

    @classmethod
    def from_config(cls, config: GateConfig, now: int) -> GateState:
        initial = min(max(config.initial_rate, config.rate_min), config.rate_max)
        return cls(
            current_rate=initial,
            rate_min=config.rate_min,
            rate_max=config.rate_max,
            stats=InteractionStats(last_interaction_at=now),
            decay=DecayParams(
                mention_mult=config.mention_mult,
                trigger_mult=config.trigger_mult,
                decay_rate_per_minute=config.decay_rate_per_minute,
                tick_interval_ms=config.tick_interval_ms,
            ),
        )
