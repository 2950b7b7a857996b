"""Configuration module for kuukibot."""

from kuukibot.config.loader import get_config_path, load_config, parse_config
from kuukibot.config.schema import AgentConfig, BackendConfig, Config, GateConfig, PipelineConfig

__all__ = [
    "AgentConfig",
    "BackendConfig",
    "Config",
    "GateConfig",
    "PipelineConfig",
    "get_config_path",
    "load_config",
    "parse_config",
]
