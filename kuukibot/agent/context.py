"""Context builder for assembling the model input.

Turns retrieved history into tagged text and wraps it, together with the
tool menu and the task (or continuation) block, into the two-message
prompt the backend receives: one system message, one user message.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import tiktoken
from loguru import logger

from kuukibot.agent.actions import ActionKind
from kuukibot.agent.collaborators import ContextStore
from kuukibot.agent.prompts.loader import PromptLoader
from kuukibot.bus.events import HistoryEntry, InboundEvent, now_ms
from kuukibot.config.schema import AgentConfig, PipelineConfig

T = TypeVar("T")

# cl100k_base is a close enough approximation for most chat models
_ENCODER = tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens with tiktoken (cl100k_base)."""
    return len(_ENCODER.encode(text))


@dataclass
class RetrievedContext:
    """What the context store supplied for one pipeline run."""

    history: list[HistoryEntry] = field(default_factory=list)
    similar: list[HistoryEntry] = field(default_factory=list)  # Related notes
    user_memory: dict[str, Any] | None = None


@dataclass
class Continuation:
    """Search results to inject when re-invoking the model."""

    kind: ActionKind
    keyword: str
    previous_action: str  # Model output up to and including the search tag
    results: list[Any] = field(default_factory=list)


async def _safe(call: Awaitable[T], default: T, what: str, conversation_id: str) -> T:
    try:
        return await call
    except Exception as e:
        logger.warning(f"Context {conversation_id}: {what} failed: {e}")
        return default


async def retrieve_context(
    store: ContextStore,
    event: InboundEvent,
    config: PipelineConfig,
) -> RetrievedContext:
    """Fetch history, related notes and the sender's memory concurrently.

    A failing store call is logged and treated as empty.
    """
    cid = event.conversation_id
    history, similar, memory = await asyncio.gather(
        _safe(store.get_context(cid, event.message_id, config.context_window), [], "get_context", cid),
        _safe(
            store.search_similar(cid, event.text, {
                "limit": config.similar_limit,
                "content_types": ["note"],
                "time_window": config.similar_time_window,
            }),
            [], "search_similar", cid,
        ),
        _safe(store.get_user_memory(event.sender_id), None, "get_user_memory", cid),
    )
    return RetrievedContext(history=list(history or []), similar=list(similar or []), user_memory=memory)


def format_age(created_at: int | None, now: int) -> str:
    """Relative age suffix like ' (5 minutes ago)'; empty when unknown."""
    if created_at is None:
        return ""
    diff = max(0, now - created_at) / 1000
    if diff < 60:
        label = "just now"
    elif diff < 3600:
        label = f"{int(diff // 60)} minutes ago"
    elif diff < 86400:
        label = f"{int(diff // 3600)} hours ago"
    else:
        label = f"{int(diff // 86400)} days ago"
    return f" ({label})"


class ContextBuilder:
    """Builds the prompt messages for one backend call."""

    def __init__(
        self,
        config: AgentConfig | None = None,
        prompts: PromptLoader | None = None,
        clock: Callable[[], int] = now_ms,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self.config = config or AgentConfig()
        self._prompts = prompts or PromptLoader()
        self._clock = clock
        self._count_tokens = token_counter

    @property
    def prompt_version(self) -> str:
        return self._prompts.version

    # ── History formatting ────────────────────────────────────────────

    def format_entry(
        self, entry: HistoryEntry, now: int, with_age: bool = True, latest_reply: bool = False,
    ) -> str | None:
        """One history entry as a tagged line, or None if it must be hidden."""
        age = format_age(entry.created_at, now) if with_age else ""
        if entry.is_message:
            if entry.sender_id and entry.sender_id in self.config.pipeline.blacklist_users:
                return None
            user = entry.sender_name or entry.sender_id or "unknown"
            reply = ""
            if entry.reply_to_text is not None:
                reply = f'<reply_to user="{entry.reply_to_sender or ""}">{entry.reply_to_text}</reply_to>'
            return f'<message id="{entry.message_id or ""}" user="{user}"{age}>{reply}{entry.text}</message>'
        if latest_reply:
            return f"<bot_latest_reply{age}>{entry.text}</bot_latest_reply>"
        return f"<bot_{entry.kind}{age}>{entry.text}</bot_{entry.kind}>"

    def format_history(
        self, entries: list[HistoryEntry], with_age: bool = True, emphasize_last_reply: bool = False,
    ) -> str:
        now = self._clock()
        lines = []
        last = len(entries) - 1
        for i, entry in enumerate(entries):
            latest = emphasize_last_reply and i == last and entry.kind == "reply"
            line = self.format_entry(entry, now, with_age=with_age, latest_reply=latest)
            if line is not None:
                lines.append(line)
        return "\n".join(lines)

    def fit_history(self, entries: list[HistoryEntry]) -> list[HistoryEntry]:
        """Drop the oldest entries until the formatted history fits the token budget."""
        budget = self.config.pipeline.history_token_budget
        if not budget or not entries:
            return entries
        kept = list(entries)
        while len(kept) > 1 and self._count_tokens(self.format_history(kept, emphasize_last_reply=True)) > budget:
            kept.pop(0)
        if len(kept) < len(entries):
            logger.debug(f"Context: trimmed {len(entries) - len(kept)} oldest history entries to fit {budget} tokens")
        return kept

    # ── Prompt assembly ───────────────────────────────────────────────

    def system_prompt(self) -> str:
        return self.config.system_prompt or self._prompts.load("system")

    def format_results(self, continuation: Continuation) -> str:
        if continuation.kind is ActionKind.WEB_SEARCH:
            return json.dumps(continuation.results, ensure_ascii=False, default=str)
        entries = [r if isinstance(r, HistoryEntry) else HistoryEntry.from_dict(r) for r in continuation.results]
        return self.format_history(entries, with_age=True)

    def build_messages(
        self,
        retrieved: RetrievedContext,
        scene: str,
        continuation: Continuation | None = None,
        sender_name: str = "",
    ) -> list[dict[str, str]]:
        """Assemble [system, user] messages for one backend call."""
        parts: list[str] = []

        # Related notes only on the first pass; a continuation carries its own results
        if retrieved.similar and continuation is None:
            parts.append(
                "<related_notes>\n" + self.format_history(retrieved.similar) + "\n</related_notes>"
            )

        memory = (retrieved.user_memory or {}).get("text")
        if memory:
            parts.append(f'<user_memory user="{sender_name}">\n{memory}\n</user_memory>')

        history = self.fit_history(retrieved.history)
        parts.append(
            "<chat_history>\n"
            + self.format_history(history, emphasize_last_reply=True)
            + "\n</chat_history>"
        )

        parts.append(self._prompts.load("tools"))

        if continuation is None:
            parts.append(self._prompts.load("task", scene=scene))
        else:
            is_web = continuation.kind is ActionKind.WEB_SEARCH
            parts.append(self._prompts.load(
                "continuation",
                previous_action=continuation.previous_action,
                search_kind="web search" if is_web else "chat history search",
                results_tag="web_search_results" if is_web else "history_search_results",
                results=self.format_results(continuation),
            ))

        if self.config.extra_prompt:
            parts.append(self.config.extra_prompt)

        return [
            {"role": "system", "content": self.system_prompt()},
            {"role": "user", "content": "\n".join(parts)},
        ]
