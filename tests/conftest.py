"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import textwrap
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from statekeeper.adapters.base import StorageBackend
from statekeeper.adapters.memory import create_memory_backend
from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.models.config import AccessConfig, LockingConfig, Role, StorageConfig, StoreConfig


class FakeClock:
    """Manually advanced UTC clock for lease expiry."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


ADMIN = "alice"
WRITER = "ci-bot"
READER = "auditor"


def make_config(**locking: float) -> StoreConfig:
    return StoreConfig(
        name="test-store",
        locking=LockingConfig(poll_interval=0.01, max_poll_interval=0.05, **locking),
        storage=StorageConfig(retry_base_delay=0.001, retry_max_delay=0.005),
        access=AccessConfig(
            default_role=Role.WRITER,
            principals={ADMIN: Role.ADMIN, READER: Role.READER},
        ),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> StorageBackend:
    return create_memory_backend()


@pytest.fixture
def coordinator(backend: StorageBackend, clock: FakeClock) -> StateCoordinator:
    """A memory-backed coordinator on a fake clock."""
    return StateCoordinator(backend, config=make_config(), clock=clock)


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    """A directory with a local-backend statekeeper.yml."""
    (tmp_path / "statekeeper.yml").write_text(textwrap.dedent(f"""\
        name: local-test
        backend:
          type: local
          path: .statekeeper
        locking:
          lease_seconds: 300
          poll_interval: 0.01
          max_poll_interval: 0.05
        storage:
          retry_base_delay: 0.001
          retry_max_delay: 0.005
        access:
          default_role: writer
          principals:
            {ADMIN}: admin
            {READER}: reader
    """))
    return tmp_path
