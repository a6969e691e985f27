"""
Status use case — summarize every state key and its lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from statekeeper.adapters.registry import BackendConfigError
from statekeeper.core.config.loader import ConfigError
from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.errors import StateStoreError
from statekeeper.core.models.lock import Lock
from statekeeper.core.models.version import StateVersion


@dataclass
class KeyStatus:
    key: str
    current: StateVersion | None = None
    lock: Lock | None = None
    lock_stale: bool = False

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "serial": self.current.serial if self.current else 0,
            "fingerprint": self.current.fingerprint if self.current else None,
            "updated_at": self.current.created_at.isoformat() if self.current else None,
            "updated_by": self.current.created_by if self.current else None,
            "lock": self.lock.model_dump(mode="json") if self.lock else None,
            "lock_stale": self.lock_stale,
        }


@dataclass
class StatusResult:
    """Aggregated store status."""

    store_name: str = ""
    backend: dict[str, str] = field(default_factory=dict)
    keys: list[KeyStatus] = field(default_factory=list)
    error: str | None = None

    @property
    def locked_count(self) -> int:
        return sum(1 for k in self.keys if k.lock is not None)

    @property
    def stale_count(self) -> int:
        return sum(1 for k in self.keys if k.lock_stale)

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        if self.error:
            return {"error": self.error}
        return {
            "store": self.store_name,
            "backend": self.backend,
            "key_count": len(self.keys),
            "locked_count": self.locked_count,
            "stale_count": self.stale_count,
            "keys": [k.to_dict() for k in self.keys],
        }


def get_status(
    config_path: Path | None = None,
    coordinator: StateCoordinator | None = None,
) -> StatusResult:
    """Read-only overview of the store. Values may be stale when shown.

    Args:
        config_path: Optional explicit path to statekeeper.yml.
        coordinator: An already-open store (skips config loading).
    """
    result = StatusResult()

    if coordinator is None:
        from statekeeper.core.use_cases.bootstrap import open_store

        try:
            coordinator = open_store(config_path)
        except (ConfigError, BackendConfigError) as e:
            result.error = str(e)
            return result

    result.store_name = coordinator.config.name
    result.backend = coordinator.backend.describe()

    try:
        locks = {lk.key: lk for lk in coordinator.locks.list_locks()}
        keys = sorted(set(coordinator.ledger.keys()) | set(locks))
        now = coordinator.locks.now()
        for key in keys:
            lock = locks.get(key)
            result.keys.append(
                KeyStatus(
                    key=key,
                    current=coordinator.ledger.current_version(key),
                    lock=lock,
                    lock_stale=bool(lock and lock.is_stale(now)),
                )
            )
    except StateStoreError as e:
        result.error = str(e)

    return result
