"""Cooperative cancellation token for pipeline runs.

The scheduler hands one token to each pipeline attempt. A newer message
may cancel it; the pipeline polls it at its suspension points (right
before and right after the backend call) and raises RunInterruptedError.
Nothing is preempted mid-call.
"""

from __future__ import annotations

import itertools
import time as _time

from kuukibot.errors import RunInterruptedError

_ids = itertools.count(1)


class CancelToken:
    """One-shot cancellation flag."""

    def __init__(self, conversation_id: str = "") -> None:
        self.id = next(_ids)
        self.conversation_id = conversation_id
        self.reason: str | None = None
        self.cancelled_at: float | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancelled_at is not None

    def cancel(self, reason: str = "superseded by a newer message") -> bool:
        """Request cancellation. Returns False if it was already cancelled."""
        if self.cancelled:
            return False
        self.reason = reason
        self.cancelled_at = _time.time()
        return True

    def raise_if_cancelled(self, where: str = "") -> None:
        if self.cancelled:
            suffix = f" {where}" if where else ""
            raise RunInterruptedError(self.conversation_id, f"interrupted{suffix}: {self.reason}")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "live"
        return f"CancelToken(#{self.id} {self.conversation_id or '?'} {state})"
