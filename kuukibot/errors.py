"""Error taxonomy for gating, the action pipeline and the scheduler.

Run-level errors (RunInterruptedError, BackendError) end the current
pipeline run. Action-level errors (MalformedActionError,
ParseFallbackError) only ever affect a single action call.
"""

from __future__ import annotations


class KuukiError(Exception):
    """Base class for all kuukibot errors."""


class ConfigError(KuukiError):
    """Configuration file could not be read or validated."""


class RunInterruptedError(KuukiError):
    """A cancellation token fired at a pipeline suspension point.

    The scheduler retries the same request on this error, up to
    ``max_retry_count`` times.
    """

    def __init__(self, conversation_id: str = "", reason: str = "interrupted") -> None:
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(f"Run for {conversation_id or '?'} {reason}")


class BackendError(KuukiError):
    """The model backend failed. Terminal for the current run."""

    def __init__(self, message: str, model: str | None = None) -> None:
        self.model = model
        super().__init__(message)


class MalformedActionError(KuukiError):
    """A parsed action call is missing required parameters."""

    def __init__(self, kind: str, missing: list[str]) -> None:
        self.kind = kind
        self.missing = missing
        super().__init__(f"{kind} is missing required parameter(s): {', '.join(missing)}")


class ParseFallbackError(KuukiError):
    """A parameter block failed structured parsing; raw text was used instead."""

    def __init__(self, tag: str, raw: str) -> None:
        self.tag = tag
        self.raw = raw
        preview = raw[:60] + "..." if len(raw) > 60 else raw
        super().__init__(f"Could not parse parameters of <{tag}>: {preview!r}")
