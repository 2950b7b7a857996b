"""Configuration loading utilities."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from kuukibot.config.schema import Config
from kuukibot.errors import ConfigError
from kuukibot.utils.helpers import convert_keys


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".kuukibot" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from a camelCase or snake_case JSON file.

    A missing file yields the default configuration. An unreadable or
    invalid file raises ConfigError rather than silently running with
    defaults.
    """
    path = config_path or get_config_path()
    if not path.exists():
        logger.info(f"No config at {path}, using defaults")
        return Config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config from {path}: {e}") from e

    return parse_config(data, source=str(path))


def parse_config(data: dict, source: str = "<dict>") -> Config:
    """Validate a raw config dict.

    Collection/conversation override blocks stay raw dicts here and are
    merged lazily by Config.for_conversation().
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {source} must be an object")

    try:
        config = Config.model_validate(convert_keys(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {source}: {e}") from e

    logger.debug(
        f"Loaded config from {source}: "
        f"{sum(len(c.conversations) for c in config.collections)} conversation(s) "
        f"in {len(config.collections)} collection(s)"
    )
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file (snake_case keys)."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(config.model_dump(), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
