"""
Bootstrap use case — turn a config file into a ready coordinator.
"""

from __future__ import annotations

import logging
from pathlib import Path

from statekeeper.adapters.registry import BackendRegistry, default_registry
from statekeeper.core.config.loader import config_root, load_config, resolve_config_path
from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.models.config import StoreConfig
from statekeeper.core.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)


def build_coordinator(
    config: StoreConfig,
    base_dir: Path,
    registry: BackendRegistry | None = None,
    metrics: MetricsRegistry | None = None,
) -> StateCoordinator:
    """Create the configured backend and wrap it in a coordinator.

    Raises:
        BackendConfigError: The backend cannot be built.
    """
    backend = (registry or default_registry()).create(config, base_dir)
    return StateCoordinator(backend, config=config, metrics=metrics)


def open_store(
    config_path: Path | None = None,
    registry: BackendRegistry | None = None,
    metrics: MetricsRegistry | None = None,
) -> StateCoordinator:
    """Load statekeeper.yml (searching upward if no path) and open the store.

    Raises:
        ConfigError: Missing or invalid configuration.
        BackendConfigError: The backend cannot be built.
    """
    config_path = resolve_config_path(config_path)
    config = load_config(config_path)
    coordinator = build_coordinator(config, config_root(config_path), registry, metrics)
    logger.debug("Opened store '%s' at %s", config.name, coordinator.backend.location)
    return coordinator
