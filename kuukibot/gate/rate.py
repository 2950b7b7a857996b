"""Pure functions behind the response gate.

No instance state, no clocks: every function takes ``now`` explicitly so
the decay curve and the sliding windows are testable without timers.
"""

from __future__ import annotations

from kuukibot.gate.models import MS_PER_MINUTE, RATE_WINDOW_MS, DecayParams, InteractionStats


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def decay_factor(now: int, last_interaction_at: int, decay_rate_per_minute: float) -> float:
    """Multiplier in [0, 1] that shrinks with idle minutes."""
    idle_minutes = max(0, now - last_interaction_at) / MS_PER_MINUTE
    return max(0.0, 1.0 - idle_minutes * decay_rate_per_minute)


def compute_rate(
    current_rate: float,
    rate_min: float,
    rate_max: float,
    stats: InteractionStats,
    decay: DecayParams,
    now: int,
) -> float:
    """Next response rate given pending interaction counts and idle time.

    A conversation sitting at the floor jumps straight to the ceiling on
    the first mention or trigger word; otherwise counts add to the rate
    and the sum decays with idle time.
    """
    if current_rate <= rate_min and stats.has_interactions:
        return rate_max

    factor = decay_factor(now, stats.last_interaction_at, decay.decay_rate_per_minute)
    raw = (
        current_rate
        + stats.mention_count * decay.mention_mult
        + stats.trigger_word_count * decay.trigger_mult
    ) * factor
    return clamp(raw, rate_min, rate_max)


def prune_window(timestamps: list[int], now: int, window: int = RATE_WINDOW_MS) -> list[int]:
    """Drop timestamps that fell out of the trailing window."""
    return [t for t in timestamps if now - t < window]


def record_and_count(
    windows: dict[str, list[int]],
    key: str,
    now: int,
    window: int = RATE_WINDOW_MS,
) -> int:
    """Append ``now`` to the key's window, prune it, and return the count."""
    pruned = prune_window(windows.get(key, []), now, window)
    pruned.append(now)
    windows[key] = pruned
    return len(pruned)


def cleanup_windows(windows: dict[str, list[int]], now: int, window: int = RATE_WINDOW_MS) -> int:
    """Prune every window in place and drop empty keys. Returns keys removed."""
    removed = 0
    for key in list(windows):
        recent = prune_window(windows[key], now, window)
        if recent:
            windows[key] = recent
        else:
            del windows[key]
            removed += 1
    return removed


def match_word(text: str | None, words: list[str]) -> str | None:
    """First configured word contained in the text (substring match)."""
    if not text or not words:
        return None
    for word in words:
        if word and word in text:
            return word
    return None
