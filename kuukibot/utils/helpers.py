"""Small helpers shared across the package."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\s]+')


def ensure_dir(path: Path) -> Path:
    """Create the directory (and parents) if missing; return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str, max_len: int = 40) -> str:
    """Turn an arbitrary id into something usable as a file name."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("_")
    return cleaned[:max_len] or "unnamed"


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def deep_merge(*layers: Any) -> dict[str, Any]:
    """Merge dicts left to right; nested dicts merge, everything else overwrites.

    Non-dict layers are ignored. Inputs are never mutated.
    """
    target: dict[str, Any] = {}
    for layer in layers:
        if not isinstance(layer, dict):
            continue
        for key, value in layer.items():
            if isinstance(value, dict):
                target[key] = deep_merge(target.get(key), value)
            elif isinstance(value, list):
                target[key] = list(value)
            else:
                target[key] = value
    return target
