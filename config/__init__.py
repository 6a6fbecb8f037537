"""Configuration – YAML file parsed into pydantic models."""

from config.loader import DEFAULT_CONFIG_PATH, ArenaConfig, load_config

__all__ = ["ArenaConfig", "DEFAULT_CONFIG_PATH", "load_config"]
