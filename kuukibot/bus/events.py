"""Event types passed between the platform adapter and the agent core."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    """Wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class InboundEvent:
    """A normalized chat message, produced by the platform adapter."""

    conversation_id: str  # Chat/group identifier
    message_id: str  # Platform message identifier
    text: str  # Message text (captions, sticker descriptions already folded in)
    sender_id: str  # User identifier
    is_direct: bool = False  # Private/DM channel
    mentions_agent: bool = False  # @handle mention
    replied_to_agent: bool = False  # Reply to one of the agent's own messages
    timestamp: int = field(default_factory=now_ms)  # ms since epoch
    sender_name: str = ""
    reply_to_text: str | None = None
    reply_to_sender: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# History kind for a user message; any other kind is an action the agent
# recorded earlier (reply, text, note, ...).
MESSAGE = "message"


@dataclass
class HistoryEntry:
    """One record returned by the context store (message or recorded action)."""

    kind: str  # "message" or a bot action kind
    text: str
    message_id: str | None = None
    sender_id: str | None = None
    sender_name: str = ""
    created_at: int | None = None  # ms since epoch
    reply_to_sender: str | None = None
    reply_to_text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_message(self) -> bool:
        return self.kind == MESSAGE

    @classmethod
    def from_event(cls, event: InboundEvent) -> HistoryEntry:
        """Build the history record for an inbound event."""
        return cls(
            kind=MESSAGE,
            text=event.text,
            message_id=event.message_id,
            sender_id=event.sender_id,
            sender_name=event.sender_name,
            created_at=event.timestamp,
            reply_to_sender=event.reply_to_sender,
            reply_to_text=event.reply_to_text,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON storage or tracing."""
        return {
            "kind": self.kind,
            "text": self.text,
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "created_at": self.created_at,
            "reply_to_sender": self.reply_to_sender,
            "reply_to_text": self.reply_to_text,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> HistoryEntry:
        """Deserialize from JSON storage."""
        return cls(
            kind=d.get("kind", MESSAGE),
            text=d.get("text", ""),
            message_id=d.get("message_id"),
            sender_id=d.get("sender_id"),
            sender_name=d.get("sender_name", ""),
            created_at=d.get("created_at"),
            reply_to_sender=d.get("reply_to_sender"),
            reply_to_text=d.get("reply_to_text"),
            metadata=d.get("metadata") or {},
        )
