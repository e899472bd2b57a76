"""Configuration module."""

from heartbot.core.config.loader import ConfigError, load_config
from heartbot.core.config.schema import Config

__all__ = ["Config", "ConfigError", "load_config"]
