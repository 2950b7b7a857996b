"""Action calls and the tag parser that extracts them from model output.

The model invokes tools by writing a known tag name as an XML-ish tag and
putting the parameters inside, either as a JSON object::

    <chat____reply>{"message_id": "42", "reply": "same"}</chat____reply>

or as sub-tags::

    <chat____reply><message_id>42</message_id><reply>same</reply></chat____reply>

Anything else inside the tag is kept as an opaque string. Tags outside
the closed vocabulary are ignored. Parsing stops at the first
continuation tag (search / web search) and the text after it is cut off,
since the model is about to be re-invoked with the search results.

Pure functions, no I/O.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import json_repair
from loguru import logger

from kuukibot.errors import MalformedActionError, ParseFallbackError


class ActionKind(str, Enum):
    REPLY = "reply"
    TEXT = "text"
    NOTE = "note"
    SKIP = "skip"
    SEARCH = "search"
    WEB_SEARCH = "web_search"
    UPDATE_MEMORY = "update_memory"

    @property
    def is_continuation(self) -> bool:
        return self in (ActionKind.SEARCH, ActionKind.WEB_SEARCH)


# Tag name → kind. The tool menu in the prompt advertises these names.
TAGS: dict[str, ActionKind] = {
    "chat____text": ActionKind.TEXT,
    "chat____reply": ActionKind.REPLY,
    "chat____note": ActionKind.NOTE,
    "chat____skip": ActionKind.SKIP,
    "chat____search": ActionKind.SEARCH,
    "web____search": ActionKind.WEB_SEARCH,
    "memory____update": ActionKind.UPDATE_MEMORY,
}

REQUIRED_PARAMS: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.TEXT: ("message",),
    ActionKind.REPLY: ("message_id", "reply"),
    ActionKind.NOTE: ("note",),
    ActionKind.SKIP: (),
    ActionKind.SEARCH: ("keyword",),
    ActionKind.WEB_SEARCH: ("keyword",),
    ActionKind.UPDATE_MEMORY: ("message_id", "instruction"),
}

_TAG_PATTERN = re.compile(
    r"<(?P<tag>" + "|".join(re.escape(t) for t in TAGS) + r")\s*"
    r"(?:/>|>(?P<body>[\s\S]*?)</(?P=tag)\s*>)"
)
_SUBTAG_PATTERN = re.compile(r"<(?P<name>[a-z_]+)>(?P<value>[\s\S]*?)</(?P=name)>")


@dataclass
class ActionCall:
    """One parsed tool invocation."""

    kind: ActionKind
    params: dict[str, Any] = field(default_factory=dict)
    tag: str = ""
    raw: str = ""  # Parameter block as written by the model
    parse_error: ParseFallbackError | None = None

    @property
    def is_continuation(self) -> bool:
        return self.kind.is_continuation

    def param(self, name: str) -> str:
        """Parameter as a stripped string ("" when absent)."""
        value = self.params.get(name)
        if value is None:
            return ""
        return str(value).strip()

    def missing_params(self) -> list[str]:
        return [name for name in REQUIRED_PARAMS[self.kind] if not self.param(name)]

    def validate(self) -> None:
        """Raise MalformedActionError if required parameters are missing."""
        missing = self.missing_params()
        if missing:
            raise MalformedActionError(self.kind.value, missing)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "params": self.params, "fallback": self.parse_error is not None}


@dataclass
class ParsedResponse:
    """Result of parsing one model response."""

    calls: list[ActionCall]
    text: str  # Response text, cut right after a continuation tag if present
    truncated: bool = False

    @property
    def continuation(self) -> ActionCall | None:
        if self.calls and self.calls[-1].is_continuation:
            return self.calls[-1]
        return None


def parse_params(tag: str, body: str) -> tuple[dict[str, Any] | str, ParseFallbackError | None]:
    """Parse a parameter block: JSON, repaired JSON, sub-tags, else raw string."""
    body = body.strip()
    if not body:
        return {}, None

    try:
        data = json.loads(body)
        if isinstance(data, dict):
            return data, None
    except (json.JSONDecodeError, ValueError):
        pass

    if body.startswith("{"):
        try:
            repaired = json_repair.loads(body)
        except ValueError:
            repaired = None
        if isinstance(repaired, dict) and repaired:
            return repaired, None

    subtags = {m.group("name"): m.group("value").strip() for m in _SUBTAG_PATTERN.finditer(body)}
    if subtags:
        return subtags, None

    return body, ParseFallbackError(tag, body)


def _build_call(tag: str, body: str) -> ActionCall:
    kind = TAGS[tag]
    if kind is ActionKind.SKIP:
        return ActionCall(kind=kind, tag=tag, raw=body)

    params, error = parse_params(tag, body)
    if isinstance(params, str):
        # Opaque payload: usable only when the tool takes a single parameter
        required = REQUIRED_PARAMS[kind]
        params = {required[0]: params} if len(required) == 1 else {}
        logger.warning(f"Action parse: {error}; using raw text")
    return ActionCall(kind=kind, params=params, tag=tag, raw=body, parse_error=error)


def parse_response(text: str | None) -> ParsedResponse:
    """Extract ordered action calls from model output."""
    if not text:
        return ParsedResponse(calls=[], text="")

    calls: list[ActionCall] = []
    for match in _TAG_PATTERN.finditer(text):
        call = _build_call(match.group("tag"), match.group("body") or "")
        calls.append(call)
        if call.is_continuation:
            end = match.end()
            return ParsedResponse(calls=calls, text=text[:end], truncated=end < len(text))

    return ParsedResponse(calls=calls, text=text)


def parse_actions(text: str | None) -> list[ActionCall]:
    """Shortcut for ``parse_response(text).calls``."""
    return parse_response(text).calls
