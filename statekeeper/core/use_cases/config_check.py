"""
Config check use case — validate statekeeper.yml and report issues.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from statekeeper.core.config.loader import ConfigError, config_root, find_config_file, load_config
from statekeeper.core.models.config import Role, StoreConfig


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: StoreConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "store_name": self.config.name if self.config else None,
            "backend": self.config.backend.type if self.config else None,
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate store configuration and report issues.

    Args:
        config_path: Optional explicit path to statekeeper.yml.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No statekeeper.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_config(config_path)
        result.config = config
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    # Backend
    if config.backend.type == "memory":
        result.warnings.append("Memory backend: state is lost when the process exits.")
    elif config.backend.type == "local":
        root = Path(config.backend.path)
        if not root.is_absolute():
            root = config_root(config_path) / root
        if root.exists() and not root.is_dir():
            result.errors.append(f"Backend path is not a directory: {root}")

    encryption = config.backend.encryption
    if encryption.enabled and not os.environ.get(encryption.passphrase_env):
        result.errors.append(
            f"Encryption is enabled but ${encryption.passphrase_env} is not set."
        )

    # Locking
    locking = config.locking
    if locking.wait_timeout >= locking.lease_seconds:
        result.warnings.append(
            "locking.wait_timeout is not shorter than lease_seconds; "
            "callers may wait longer than a whole lease."
        )
    if locking.poll_interval > locking.max_poll_interval:
        result.errors.append("locking.poll_interval exceeds max_poll_interval.")

    # Access
    access = config.access
    admins = [p for p, role in access.principals.items() if role == Role.ADMIN]
    if not admins and access.default_role != Role.ADMIN:
        result.warnings.append(
            "No admin principals: nobody can force-unlock, restore, or prune."
        )
    if access.default_role == Role.ADMIN:
        result.warnings.append(
            "default_role is admin: every principal may force-unlock and restore."
        )

    if config.storage.retry_base_delay > config.storage.retry_max_delay:
        result.errors.append("storage.retry_base_delay exceeds retry_max_delay.")

    result.valid = len(result.errors) == 0
    return result
