"""
Configuration loader — reads statekeeper.yml into the StoreConfig model.

This is the primary entry point for loading store configuration.
It reads YAML, validates against the pydantic schema, and returns a
typed ``StoreConfig``.  A missing file is an error; an empty file is a
valid configuration with every default.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from statekeeper.core.models.config import StoreConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "statekeeper.yml"


class ConfigError(Exception):
    """Raised when store configuration is invalid or missing."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for statekeeper.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to statekeeper.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def resolve_config_path(path: Path | None = None) -> Path:
    """The explicit config path, or the one found by searching upward.

    Raises:
        ConfigError: No path given and none found.
    """
    found = path if path is not None else find_config_file()
    if found is None:
        raise ConfigError(
            f"No {CONFIG_FILE} found. "
            "Create one (an empty file uses the defaults), or specify --config."
        )
    return found


def load_config(path: Path | None = None) -> StoreConfig:
    """Load and validate store configuration.

    Args:
        path: Explicit path to statekeeper.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = resolve_config_path(path)

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading store config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        config = StoreConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid store configuration in {path}: {e}") from e

    logger.info("Loaded store '%s' (%s backend)", config.name, config.backend.type)
    return config


def config_root(config_path: Path) -> Path:
    """Directory relative backend paths are resolved against."""
    return config_path.parent.resolve()
