"""ResponseGate — decides whether the agent acts on an incoming event.

Checks run in fixed priority order, each an early exit:

    1. Private channel        → act (private)
    2. Mention / reply to us  → act (mention)
    3. Trigger word           → act (trigger)
    4. Cooldown               → reject
    5. Sliding-window limits  → reject
    6. Ignore word            → reject
    7. Random draw < rate     → act (random), else reject

Priority checks (1–3) bump the interaction counters and immediately
recompute the response rate. They never consume cooldown or rate-limit
budget. The cooldown check stamps the response time as soon as it
passes, so a later reject (5–7) still restarts the cooldown.

A background DecayTimer re-runs the rate formula during silence,
pulling the rate back toward its floor.

Pure state + timers, no network calls.
"""

from __future__ import annotations

import random
import threading
from typing import Callable

from loguru import logger

from kuukibot.bus.events import InboundEvent, now_ms
from kuukibot.config.schema import GateConfig
from kuukibot.gate.models import Decision, DecisionKind, GateState
from kuukibot.gate.rate import (
    clamp,
    cleanup_windows,
    compute_rate,
    match_word,
    record_and_count,
)
from kuukibot.gate.timer import DecayTimer


class ResponseGate:
    """Per-conversation decision engine."""

    def __init__(
        self,
        conversation_id: str,
        config: GateConfig | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.config = config or GateConfig()
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self.state = GateState.from_config(self.config, now=self._clock())
        self._timer = DecayTimer(
            self.config.tick_interval_ms, self.tick, name=f"decay:{conversation_id}",
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the decay timer. Requires a running event loop."""
        self._timer.start()

    def stop(self) -> None:
        """Cancel the decay timer."""
        self._timer.stop()

    @property
    def timer_running(self) -> bool:
        return self._timer.running

    # ── Public API ────────────────────────────────────────────────────

    @property
    def current_rate(self) -> float:
        with self._lock:
            return self.state.current_rate

    def evaluate(self, event: InboundEvent, now: int | None = None) -> Decision:
        """Decide whether to act on ``event``."""
        now = self._clock() if now is None else now
        with self._lock:
            decision = self._evaluate_locked(event, now)
            rate = self.state.current_rate
        logger.debug(
            f"Gate {self.conversation_id}: msg {event.message_id} → "
            f"{decision.kind.value} act={decision.should_act} "
            f"(rate={rate:.3f}, scene={decision.scene!r})"
        )
        return decision

    def tick(self, now: int | None = None) -> float:
        """One decay step: recompute the rate and prune stale windows."""
        now = self._clock() if now is None else now
        with self._lock:
            self._recompute_locked(now)
            cleanup_windows(self.state.conversation_windows, now)
            cleanup_windows(self.state.user_windows, now)
            return self.state.current_rate

    def increase(self, delta: float) -> float:
        """Nudge the rate up (e.g. after a reply was sent)."""
        with self._lock:
            s = self.state
            s.current_rate = clamp(s.current_rate + abs(delta), s.rate_min, s.rate_max)
            return s.current_rate

    def decrease(self, delta: float) -> float:
        """Nudge the rate down (e.g. after the model chose to skip)."""
        with self._lock:
            s = self.state
            s.current_rate = clamp(s.current_rate - abs(delta), s.rate_min, s.rate_max)
            return s.current_rate

    def reset_cooldown(self) -> None:
        """Forget the last response time so the next organic check passes."""
        with self._lock:
            self.state.last_response_at.pop(self.conversation_id, None)

    def snapshot(self) -> dict[str, object]:
        """Plain-dict view of the gate for tracing and inspection."""
        with self._lock:
            s = self.state
            return {
                "conversation_id": self.conversation_id,
                "current_rate": round(s.current_rate, 4),
                "rate_min": s.rate_min,
                "rate_max": s.rate_max,
                "mention_count": s.stats.mention_count,
                "trigger_word_count": s.stats.trigger_word_count,
                "last_interaction_at": s.stats.last_interaction_at,
                "last_response_at": s.last_response_at.get(self.conversation_id),
                "tracked_users": len(s.user_windows),
                "timer_running": self._timer.running,
            }

    # ── Internal (caller holds the lock) ──────────────────────────────

    def _evaluate_locked(self, event: InboundEvent, now: int) -> Decision:
        stats = self.state.stats

        if event.is_direct:
            stats.mention_count += 1
            stats.last_interaction_at = now
            self._recompute_locked(now)
            return Decision(True, DecisionKind.PRIVATE, "private chat")

        if event.mentions_agent or event.replied_to_agent:
            stats.mention_count += 1
            stats.last_interaction_at = now
            self._recompute_locked(now)
            return Decision(True, DecisionKind.MENTION, "mentioned or replied to")

        trigger = match_word(event.text, self.config.trigger_words)
        if trigger:
            stats.trigger_word_count += 1
            stats.last_interaction_at = now
            self._recompute_locked(now)
            return Decision(True, DecisionKind.TRIGGER, f'trigger word matched: "{trigger}"')

        if not self._check_cooldown(now):
            return Decision.reject("in cooldown")

        if not self._check_rate_limit(event, now):
            return Decision.reject("rate limit exceeded")

        if match_word(event.text, self.config.ignore_words):
            return Decision.reject("ignore word matched")

        if self._rng.random() < self.state.current_rate:
            return Decision(
                True, DecisionKind.RANDOM,
                "random chime-in; speak carefully and avoid interrupting",
            )
        return Decision.reject("no trigger condition met")

    def _check_cooldown(self, now: int) -> bool:
        """Passes (and stamps the response time) when the cooldown elapsed."""
        last = self.state.last_response_at.get(self.conversation_id)
        if last is not None and now - last < self.config.cooldown_ms:
            return False
        self.state.last_response_at[self.conversation_id] = now
        return True

    def _check_rate_limit(self, event: InboundEvent, now: int) -> bool:
        if not event.is_direct:
            group_count = record_and_count(self.state.conversation_windows, event.conversation_id, now)
            if group_count > self.config.group_rate_limit:
                return False
        user_count = record_and_count(self.state.user_windows, event.sender_id, now)
        return user_count <= self.config.user_rate_limit

    def _recompute_locked(self, now: int) -> None:
        s = self.state
        s.current_rate = compute_rate(s.current_rate, s.rate_min, s.rate_max, s.stats, s.decay, now)
        s.stats.reset_counts()
