"""Interfaces of the collaborators the agent core depends on.

Concrete implementations (platform delivery, vector storage) live outside
this package; anything that structurally matches these protocols works.
All methods are coroutines and may raise: the pipeline and scheduler log
failures and carry on.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from kuukibot.bus.events import HistoryEntry


@runtime_checkable
class ActionExecutor(Protocol):
    """Side effects the agent can cause."""

    async def send_text(self, conversation_id: str, text: str) -> None: ...

    async def send_reply(self, conversation_id: str, text: str, reply_to_message_id: str) -> None: ...

    async def record_action(
        self, conversation_id: str, text: str, kind: str, meta: dict[str, Any] | None = None,
    ) -> None: ...

    async def search(self, conversation_id: str, keyword: str) -> list[HistoryEntry]: ...

    async def web_search(self, keyword: str) -> list[dict[str, Any]]: ...

    async def update_memory(self, message_id: str, instruction: str) -> dict[str, Any]: ...


@runtime_checkable
class ContextStore(Protocol):
    """Read side of the message history store."""

    async def get_context(
        self, conversation_id: str, message_id: str, window_size: int,
    ) -> list[HistoryEntry]: ...

    async def search_similar(
        self, conversation_id: str, query: str, options: dict[str, Any] | None = None,
    ) -> list[HistoryEntry]: ...

    async def get_user_memory(self, user_id: str) -> dict[str, Any] | None: ...
