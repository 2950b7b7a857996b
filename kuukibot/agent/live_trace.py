"""Live event tracer for gate decisions and pipeline runs.

Collects events from the scheduler and pipeline into a thread-safe ring
buffer, plus a per-conversation snapshot of what each conversation is
doing right now.

    scheduler/pipeline emit → LiveTracer (deque) → recent() / state()
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from typing import Any


class LiveTracer:
    """Ring buffer of the most recent processing events.

    Events are JSON-serializable dicts with an id, type, timestamp,
    conversation_id and a type-specific payload.

    Usage:
        tracer.emit("decision", "chat-1", kind="mention", should_act=True)
        tracer.update_state("chat-1", processing=True)
    """

    def __init__(self, maxlen: int = 500) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._counter: int = 0
        self._state: dict[str, Any] = {
            "processing": {},  # conversation_id → bool
            "pending": {},     # conversation_id → pending message_id
            "rates": {},       # conversation_id → current rate
        }
        self._state_lock = threading.Lock()

    def emit(self, event_type: str, conversation_id: str = "", **data: Any) -> None:
        """Record an event."""
        with self._lock:
            self._counter += 1
            self._events.append({
                "id": self._counter,
                "type": event_type,
                "ts": datetime.now().strftime("%H:%M:%S.%f")[:12],
                "conversation_id": conversation_id,
                **data,
            })

    def recent(self, count: int = 100, event_type: str | None = None) -> list[dict[str, Any]]:
        """The most recent N events, optionally only of one type."""
        with self._lock:
            items = list(self._events)
        if event_type is not None:
            items = [e for e in items if e["type"] == event_type]
        return items[-count:] if len(items) > count else items

    def update_state(self, conversation_id: str | None = None, **kwargs: Any) -> None:
        """Update the state snapshot.

        With a conversation_id, each keyword is stored under that
        conversation (``state["processing"][cid] = True``) and a None value
        removes the entry; without one, keywords replace top-level entries.
        """
        with self._state_lock:
            if conversation_id is None:
                self._state.update(kwargs)
                return
            for key, value in kwargs.items():
                bucket = self._state.setdefault(key, {})
                if value is None:
                    bucket.pop(conversation_id, None)
                else:
                    bucket[conversation_id] = value

    def state(self) -> dict[str, Any]:
        """A copy of the current state snapshot."""
        with self._state_lock:
            return {k: dict(v) if isinstance(v, dict) else v for k, v in self._state.items()}
