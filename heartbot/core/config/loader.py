"""Configuration loader — YAML file + env override, validated once at startup."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from heartbot.core.config.schema import Config


class ConfigError(ValueError):
    """The configuration file (or an env override) is unreadable or invalid."""


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``HEARTBOT_CONFIG`` env variable
        3. ``./config.yaml`` in cwd

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  YAML  >  defaults

    Raises ConfigError naming the source when YAML parsing or validation fails,
    e.g. an eligibility window narrower than the tick interval.
    """
    path = _resolve_path(config_path)
    yaml_data = _load_yaml(path)
    source = str(path) if path and path.exists() else "defaults + env"
    try:
        config = Config(**yaml_data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration ({source}): {errors}") from e
    logger.debug(f"Config loaded from {source}")
    return config


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    if config_path:
        return Path(config_path)

    env = os.environ.get("HEARTBOT_CONFIG")
    if env:
        return Path(env)

    default = Path("config.yaml")
    return default if default.exists() else None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML file, return empty dict if not found."""
    if not path:
        return {}
    if not path.exists():
        # Only reached for an explicitly named file
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data
