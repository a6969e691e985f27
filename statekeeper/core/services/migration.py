"""
Backend migration — move version chains from one store to another.

Each key is copied as a complete retained chain: serials, fingerprints,
authors and timestamps survive the move, so history on the destination
reads exactly as it did on the source.  Both sides are locked for the
duration of a key's copy and every payload is fingerprint-verified on
the way through.

Per-key outcomes:
    copy      destination empty → chain imported
    skip      destination already holds the identical chain
    empty     source key has no versions
    conflict  destination holds a different chain → ConcurrentModification
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.errors import ConcurrentModification, VersionConflict
from statekeeper.core.models.config import Role
from statekeeper.core.models.lock import LockOperation
from statekeeper.core.models.version import StateSnapshot, StateVersion
from statekeeper.core.persistence.audit import AuditAction, AuditOutcome, AuditRecord

logger = logging.getLogger(__name__)


@dataclass
class KeyMigration:
    key: str
    action: str                     # copy | skip | empty | conflict
    versions: int = 0
    current_serial: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "action": self.action,
            "versions": self.versions,
            "current_serial": self.current_serial,
            "message": self.message,
        }


@dataclass
class MigrationResult:
    source: str
    destination: str
    dry_run: bool = False
    keys: list[KeyMigration] = field(default_factory=list)

    @property
    def copied(self) -> list[KeyMigration]:
        return [k for k in self.keys if k.action == "copy"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "dry_run": self.dry_run,
            "copied": len(self.copied),
            "keys": [k.to_dict() for k in self.keys],
        }


def _same_chain(a: list[StateVersion], b: list[StateVersion]) -> bool:
    return [(v.serial, v.fingerprint) for v in a] == [(v.serial, v.fingerprint) for v in b]


def _chain(coordinator: StateCoordinator, key: str) -> list[StateVersion]:
    return list(coordinator.ledger.iter_history(key, newest_first=False))


def _plan_key(source: StateCoordinator, destination: StateCoordinator, key: str) -> KeyMigration:
    chain = _chain(source, key)
    if not chain:
        return KeyMigration(key=key, action="empty", message="no versions on source")

    existing = _chain(destination, key)
    if not existing:
        return KeyMigration(key=key, action="copy", versions=len(chain), current_serial=chain[-1].serial)
    if _same_chain(chain, existing):
        return KeyMigration(
            key=key, action="skip", versions=len(chain), current_serial=chain[-1].serial,
            message="destination already holds this chain",
        )
    return KeyMigration(
        key=key, action="conflict", versions=len(chain), current_serial=existing[-1].serial,
        message=f"destination has a different history (serial {existing[-1].serial})",
    )


def migrate_state(
    source: StateCoordinator,
    destination: StateCoordinator,
    principal: str,
    reason: str,
    keys: list[str] | None = None,
    dry_run: bool = False,
) -> MigrationResult:
    """Copy the version chains of ``keys`` (default: every source key).

    Stops at the first key whose destination holds a different chain.

    Raises:
        ValueError: No reason given.
        PermissionDenied: ``principal`` is not an admin on both stores.
        ConcurrentModification: Destination history differs from the source.
        LockDenied: Either side of a key is locked.
        CorruptState: A source payload fails its fingerprint check.
    """
    if not reason or not reason.strip():
        raise ValueError("Migration requires an administrative reason")
    source.access.require(principal, Role.ADMIN, AuditAction.READ)
    destination.access.require(principal, Role.ADMIN, AuditAction.WRITE)

    result = MigrationResult(
        source=source.backend.location or source.backend.name,
        destination=destination.backend.location or destination.backend.name,
        dry_run=dry_run,
    )
    for key in keys if keys is not None else source.ledger.keys():
        plan = _plan_key(source, destination, key)
        result.keys.append(plan)
        if plan.action == "conflict":
            raise ConcurrentModification(
                f"Cannot migrate {key}: {plan.message}",
                key=key,
                current_serial=plan.current_serial,
                next_action="Inspect both histories; migrate into an empty destination key.",
                migrated=[k.key for k in result.copied],
            )
        if plan.action != "copy" or dry_run:
            continue
        _copy_key(source, destination, key, principal, reason, plan)

    logger.info(
        "Migration %s → %s%s: %d copied, %d key(s) examined",
        result.source, result.destination, " (dry run)" if dry_run else "",
        len(result.copied), len(result.keys),
    )
    return result


def _copy_key(
    source: StateCoordinator,
    destination: StateCoordinator,
    key: str,
    principal: str,
    reason: str,
    plan: KeyMigration,
) -> None:
    info = f"migrate: {reason}"
    src_lock = source.locks.acquire(key, principal, LockOperation.IMPORT, info=info)
    try:
        dst_lock = destination.locks.acquire(key, principal, LockOperation.IMPORT, info=info)
        try:
            chain = _chain(source, key)
            snapshots: list[StateSnapshot] = [source.ledger.read(key, v.serial) for v in chain]
            destination.locks.verify(dst_lock)
            try:
                imported = destination.ledger.import_chain(key, snapshots)
            except VersionConflict as e:
                plan.action = "conflict"
                plan.message = str(e)
                raise ConcurrentModification(
                    f"Destination {key} changed during migration", key=key, current_serial=e.current_serial,
                ) from e
            plan.versions = len(imported)
            plan.current_serial = imported[-1].serial
            destination.audit.write(
                AuditRecord(
                    key=key, lock_id=dst_lock.lock_id, principal=principal,
                    action=AuditAction.WRITE, outcome=AuditOutcome.SUCCESS,
                    serial=plan.current_serial, reason=reason,
                    detail=f"migrated {len(imported)} version(s) from {source.backend.name}",
                )
            )
            source.audit.write(
                AuditRecord(
                    key=key, lock_id=src_lock.lock_id, principal=principal,
                    action=AuditAction.READ, outcome=AuditOutcome.SUCCESS,
                    serial=plan.current_serial, reason=reason,
                    detail=f"migrated to {destination.backend.name}",
                )
            )
        finally:
            destination.locks.release(dst_lock.lock_id)
    finally:
        source.locks.release(src_lock.lock_id)
