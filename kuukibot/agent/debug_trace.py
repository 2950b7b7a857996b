"""Debug trace logger — writes a detailed markdown log per pipeline run.

Logs the triggering event, gate decision, every messages array sent to
the backend, raw responses, parsed action calls and their outcomes.

Output: {log_dir}/debug/YYYY-MM-DD_HHMMSS_{conversation}_{message}.md
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from kuukibot.utils.helpers import ensure_dir, safe_filename


class DebugTrace:
    """Captures a single pipeline run's full processing trace."""

    def __init__(self, log_dir: Path, conversation_id: str, message_id: str, prompt_version: str = ""):
        ts = datetime.now().strftime("%Y-%m-%d_%H%M%S")
        name = safe_filename(f"{conversation_id}_{message_id}")[:40]
        self._log_dir = ensure_dir(Path(log_dir).expanduser() / "debug")
        self._path = self._log_dir / f"{ts}_{name}.md"
        self._lines: list[str] = []
        self._start = time.monotonic()

        self._write(f"# Debug Trace: {conversation_id} / {message_id}")
        self._write(f"**Time:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        if prompt_version:
            self._write(f"**Prompts:** v{prompt_version}")
        self._write("")

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, text: str) -> None:
        self._lines.append(text)

    def _elapsed(self) -> str:
        return f"{time.monotonic() - self._start:.2f}s"

    def log_event(self, event: Any) -> None:
        """Log the triggering event."""
        self._write(f"## Event ({self._elapsed()})")
        self._write(f"- **Sender:** {event.sender_name or event.sender_id}")
        self._write(f"- **Direct:** {event.is_direct}")
        self._write(f"- **Mentions agent:** {event.mentions_agent}")
        if event.metadata:
            self._write(f"- **Metadata:** `{json.dumps(event.metadata, default=str)}`")
        self._write(f"\n**Text:**\n```\n{event.text}\n```\n")

    def log_decision(self, decision: Any) -> None:
        self._write(f"## Decision ({self._elapsed()})")
        self._write(f"- **Kind:** {decision.kind.value}")
        self._write(f"- **Scene:** {decision.scene}\n")

    def log_messages(self, depth: int, messages: list[dict]) -> None:
        """Log the full messages array for one backend call."""
        self._write(f"## Backend Call: depth {depth} ({self._elapsed()})")
        for i, m in enumerate(messages):
            self._write(f"### [{i}] {m.get('role', '?')}")
            self._write(f"```\n{m.get('content', '')}\n```\n")

    def log_response(self, response: Any) -> None:
        self._write(f"### Response ({self._elapsed()})")
        self._write(f"- **Model:** {response.model or '?'}")
        self._write(f"- **Finish reason:** {response.finish_reason}")
        if response.reasoning_content:
            rc = response.reasoning_content
            preview = rc[:500] + "..." if len(rc) > 500 else rc
            self._write(f"**Reasoning:**\n```\n{preview}\n```\n")
        self._write(f"**Content:**\n```\n{response.content or ''}\n```\n")

    def log_calls(self, calls: list[Any], truncated: bool) -> None:
        self._write(f"### Parsed Calls ({self._elapsed()})")
        if not calls:
            self._write("*(no action calls)*\n")
            return
        for call in calls:
            self._write(f"- `{call.kind.value}`: `{json.dumps(call.params, ensure_ascii=False, default=str)}`")
        if truncated:
            self._write("- *(text after the continuation tag was discarded)*")
        self._write("")

    def log_action(self, kind: str, ok: bool, detail: str = "") -> None:
        mark = "ok" if ok else "FAILED"
        suffix = f": {detail}" if detail else ""
        self._write(f"- **{kind}** {mark}{suffix}")

    def log_end(self, outcome: str) -> None:
        self._write(f"\n## End ({self._elapsed()})")
        self._write(f"{outcome}\n")
        self._write(f"---\n**Total time:** {self._elapsed()}")

    def save(self) -> Path:
        """Write the trace to disk and return the path."""
        self._path.write_text("\n".join(self._lines), encoding="utf-8")
        return self._path
