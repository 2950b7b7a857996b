"""PromptLoader — load and substitute prompt templates from .txt files.

Prompts are stored as .txt files alongside this module. Template
variables use {name} syntax and are substituted via format_map.

Usage::

    loader = PromptLoader()
    prompt = loader.load("tools")
    prompt = loader.load("task", scene="mentioned or replied to")
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger


class _SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class PromptLoader:
    """Load prompt templates from kuukibot/agent/prompts/*.txt.

    Features:
        - File-based templates with {variable} substitution
        - In-memory cache
        - Version from manifest.json (recorded in debug traces)
        - Safe partial substitution (missing vars stay as {name})
    """

    def __init__(self, prompts_dir: Path | None = None) -> None:
        self._dir = prompts_dir or Path(__file__).parent
        self._cache: dict[str, str] = {}
        self._manifest: dict | None = None

    def load(self, prompt_name: str, **template_vars: Any) -> str:
        """Load a prompt template and substitute variables.

        Raises:
            FileNotFoundError: If the prompt file doesn't exist.
        """
        raw = self.load_raw(prompt_name)
        if not template_vars:
            return raw
        return raw.format_map(_SafeDict(template_vars))

    def load_raw(self, prompt_name: str) -> str:
        """Load a prompt template without any substitution."""
        if prompt_name in self._cache:
            return self._cache[prompt_name]

        path = self._dir / f"{prompt_name}.txt"
        if not path.exists():
            raise FileNotFoundError(f"Prompt '{prompt_name}' not found at {path}")

        text = path.read_text(encoding="utf-8").strip()
        self._cache[prompt_name] = text
        return text

    @property
    def manifest(self) -> dict:
        """Load and cache the manifest."""
        if self._manifest is not None:
            return self._manifest

        manifest_path = self._dir / "manifest.json"
        self._manifest = {}
        if manifest_path.exists():
            try:
                self._manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"PromptLoader: unreadable manifest at {manifest_path}: {e}")
        return self._manifest

    @property
    def version(self) -> str:
        return str(self.manifest.get("version", "unknown"))
