"""
Retention — decide which versions a prune may remove.

Pruning is permanent.  A version survives if any of these hold:
    - it is the current version
    - it is among the ``keep_last`` newest versions
    - it is younger than ``min_age``
"""

from __future__ import annotations

from datetime import datetime

from statekeeper.core.models.config import RetentionPolicy
from statekeeper.core.models.version import LedgerRecord, StateVersion


def select_prunable(
    record: LedgerRecord,
    policy: RetentionPolicy,
    now: datetime,
) -> list[StateVersion]:
    """Versions of ``record`` that ``policy`` allows removing, oldest first."""
    cutoff = now - policy.min_age
    newest_first = sorted(record.versions, key=lambda v: v.serial, reverse=True)
    protected = {v.serial for v in newest_first[: policy.keep_last]}
    protected.add(record.current_serial)

    return sorted(
        (
            v for v in record.versions
            if v.serial not in protected and v.created_at < cutoff
        ),
        key=lambda v: v.serial,
    )
