"""
Version models — immutable snapshots and the per-key ledger record.

``StateVersion`` is metadata only: the payload lives in the blob store
under ``content_id`` and is fetched separately.  ``StateSnapshot``
pairs a version with its verified payload.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from statekeeper.core.models.lock import utc_now


def fingerprint_of(payload: bytes) -> str:
    """SHA-256 hex digest of a payload."""
    return hashlib.sha256(payload).hexdigest()


class StateVersion(BaseModel):
    """One committed state snapshot (metadata)."""

    model_config = ConfigDict(frozen=True)

    key: str
    serial: int
    fingerprint: str
    content_id: str
    size: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    created_by: str = ""
    restored_from: int | None = None      # set when created by a restore
    note: str = ""


class LedgerRecord(BaseModel):
    """The ledger entry for one key: version chain + current pointer."""

    key: str
    current_serial: int = 0
    versions: list[StateVersion] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get(self, serial: int) -> StateVersion | None:
        for version in self.versions:
            if version.serial == serial:
                return version
        return None

    @property
    def current(self) -> StateVersion | None:
        if self.current_serial == 0:
            return None
        return self.get(self.current_serial)

    def referenced_content(self) -> set[str]:
        return {v.content_id for v in self.versions}


@dataclass(frozen=True)
class StateSnapshot:
    """A version together with its (fingerprint-verified) payload."""

    version: StateVersion
    payload: bytes

    @property
    def serial(self) -> int:
        return self.version.serial

    @property
    def fingerprint(self) -> str:
        return self.version.fingerprint


@dataclass(frozen=True)
class HistoryPage:
    """One page of version metadata plus the cursor for the next page."""

    versions: list[StateVersion]
    next_page_token: str | None = None

    def to_dict(self) -> dict:
        return {
            "versions": [v.model_dump(mode="json") for v in self.versions],
            "next_page_token": self.next_page_token,
        }
