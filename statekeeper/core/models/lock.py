"""
Lock model — the single occupant of a key's lock slot.

At most one Lock exists per key. A lock whose lease has run out is
*stale*: it still occupies the slot until it is released by its
holder or force-released by an administrator.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def new_lock_id() -> str:
    """Opaque, unique lock token."""
    return str(uuid.uuid4())


class LockOperation(StrEnum):
    """What the lock holder is doing."""

    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    IMPORT = "import"
    MANUAL = "manual"


class Lock(BaseModel):
    """A granted lock on one state key."""

    model_config = ConfigDict(frozen=True)

    key: str
    lock_id: str = Field(default_factory=new_lock_id)
    holder: str
    operation: LockOperation = LockOperation.MANUAL
    acquired_at: datetime = Field(default_factory=utc_now)
    lease_expires_at: datetime
    info: str = ""                    # free-form note from the holder

    def is_stale(self, now: datetime | None = None) -> bool:
        """Whether the lease has run out without renewal."""
        return (now or utc_now()) > self.lease_expires_at

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.lease_expires_at - (now or utc_now())

    def renewed(self, lease: timedelta, now: datetime | None = None) -> Lock:
        """Return a copy with the lease extended from ``now``."""
        return self.model_copy(update={"lease_expires_at": (now or utc_now()) + lease})

    def describe(self) -> str:
        """One-line human description for diagnostics."""
        return (
            f"held by {self.holder} for {self.operation.value} "
            f"since {self.acquired_at.isoformat(timespec='seconds')} "
            f"(lock ID {self.lock_id})"
        )
