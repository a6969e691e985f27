"""
Backend registry — build a storage backend from configuration.

Each backend type registers a factory.  Adding a new backend (an
object store with conditional writes, a database, ...) means writing
the three adapter classes and registering one factory here; nothing
else in the coordinator changes.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

from statekeeper.adapters.base import StorageBackend
from statekeeper.adapters.crypto import BlobCipher, new_salt
from statekeeper.adapters.local import create_local_backend, load_cipher
from statekeeper.adapters.memory import create_memory_backend
from statekeeper.core.models.config import BackendConfig, StoreConfig
from statekeeper.core.reliability.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

BackendFactory = Callable[[BackendConfig, Path], StorageBackend]


class BackendConfigError(Exception):
    """The backend section cannot be turned into a working backend."""


def _passphrase(config: BackendConfig) -> str:
    value = os.environ.get(config.encryption.passphrase_env, "")
    if not value:
        raise BackendConfigError(
            f"Encryption is enabled but ${config.encryption.passphrase_env} is not set"
        )
    return value


def _local_factory(config: BackendConfig, base_dir: Path) -> StorageBackend:
    root = Path(config.path)
    if not root.is_absolute():
        root = base_dir / root
    cipher = None
    if config.encryption.enabled:
        root.mkdir(parents=True, exist_ok=True)
        cipher = load_cipher(root, _passphrase(config), config.encryption.kdf_iterations)
    return create_local_backend(root, cipher=cipher)


def _memory_factory(config: BackendConfig, base_dir: Path) -> StorageBackend:
    cipher = None
    if config.encryption.enabled:
        cipher = BlobCipher(_passphrase(config), new_salt(), config.encryption.kdf_iterations)
    return create_memory_backend(cipher=cipher)


class BackendRegistry:
    """Named backend factories."""

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, type_name: str, factory: BackendFactory) -> None:
        if type_name in self._factories:
            logger.warning("Overwriting backend factory: %s", type_name)
        self._factories[type_name] = factory

    def types(self) -> list[str]:
        return sorted(self._factories)

    def create(self, config: StoreConfig, base_dir: Path) -> StorageBackend:
        """Build the configured backend.

        Raises:
            BackendConfigError: Unknown type or unusable settings.
        """
        factory = self._factories.get(config.backend.type)
        if factory is None:
            raise BackendConfigError(
                f"Unknown backend type '{config.backend.type}' "
                f"(available: {', '.join(self.types())})"
            )

        backend = factory(config.backend, base_dir)
        backend.breakers = CircuitBreakerRegistry(
            default_threshold=config.storage.breaker_threshold,
            default_timeout=config.storage.breaker_recovery_seconds,
        )
        logger.debug("Created %s backend at %s", backend.name, backend.location)
        return backend


def default_registry() -> BackendRegistry:
    registry = BackendRegistry()
    registry.register("local", _local_factory)
    registry.register("memory", _memory_factory)
    return registry
