"""
State coordinator — the read/modify/write cycle around one state key.

The coordinator owns orchestration only.  Locks belong to the lock
manager, serials to the version ledger, bytes to the blob store; the
coordinator strings them together and guarantees the lock is released
on every exit path.

Session flow:
    acquire lock → read current version → caller mutates → fence check
    → commit (base_serial CAS) → release lock

Every phase writes an audit record.  Errors are never swallowed: they
either surface as a ``StateStoreError`` from ``core.errors`` or, for
caller bugs, propagate unchanged after the lock is released.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Callable

from statekeeper.adapters.base import StorageBackend
from statekeeper.core.errors import (
    ConcurrentModification,
    LeaseExpired,
    LockLost,
    ResultCode,
    StateStoreError,
    VersionConflict,
)
from statekeeper.core.models.config import RetentionPolicy, Role, StoreConfig
from statekeeper.core.models.keys import validate_key
from statekeeper.core.models.lock import Lock, LockOperation, utc_now
from statekeeper.core.models.version import (
    HistoryPage,
    StateSnapshot,
    StateVersion,
    fingerprint_of,
)
from statekeeper.core.observability.logging_config import session_context
from statekeeper.core.observability.metrics import MetricsRegistry
from statekeeper.core.persistence.audit import AuditAction, AuditLog, AuditOutcome, AuditRecord
from statekeeper.core.reliability.guarded import StorageGuard
from statekeeper.core.reliability.retry import RetryPolicy
from statekeeper.core.services.access import AccessPolicy
from statekeeper.core.services.ledger import VersionLedger
from statekeeper.core.services.locks import LockManager

logger = logging.getLogger(__name__)


class Abort(Exception):
    """Raise from a session function to end the session without committing."""


class SessionStatus(StrEnum):
    COMMITTED = "committed"
    UNCHANGED = "unchanged"


@dataclass
class SessionState:
    """What a session function sees: the locked key and its current state."""

    key: str
    lock: Lock
    base_serial: int
    payload: bytes | None
    version: StateVersion | None
    _locks: LockManager = field(repr=False)

    @property
    def exists(self) -> bool:
        return self.version is not None

    def renew(self, lease_duration: float | timedelta | None = None) -> Lock:
        """Extend the session's lease. Call periodically during long work."""
        self.lock = self._locks.renew(self.lock.lock_id, lease_duration, self.lock.holder)
        return self.lock


@dataclass
class SessionResult:
    key: str
    status: SessionStatus
    base_serial: int
    lock_id: str
    version: StateVersion | None = None
    reason: str = ""
    release_error: StateStoreError | None = None

    @property
    def committed(self) -> bool:
        return self.status == SessionStatus.COMMITTED

    @property
    def serial(self) -> int:
        return self.version.serial if self.version else self.base_serial

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "base_serial": self.base_serial,
            "serial": self.serial,
            "lock_id": self.lock_id,
            "version": self.version.model_dump(mode="json") if self.version else None,
            "reason": self.reason,
            "release_error": self.release_error.to_dict() if self.release_error else None,
        }


SessionFn = Callable[[SessionState], "bytes | None"]


class StateCoordinator:
    """Entry point for every state operation on one backend."""

    def __init__(
        self,
        backend: StorageBackend,
        config: StoreConfig | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend
        self._config = config or StoreConfig()
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock

        storage = self._config.storage
        retry = RetryPolicy(
            max_attempts=storage.retry_attempts,
            base_delay=storage.retry_base_delay,
            max_delay=storage.retry_max_delay,
        )
        self._locks = LockManager(
            backend.locks,
            backend.audit,
            StorageGuard(backend.breakers.get_or_create(f"{backend.name}:locks"), retry),
            config=self._config.locking,
            metrics=self._metrics,
            clock=clock,
        )
        self._ledger = VersionLedger(backend, retry=retry, metrics=self._metrics, clock=clock)
        self._access = AccessPolicy(self._config.access, backend.audit)

    # ── Accessors ───────────────────────────────────────────────

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def ledger(self) -> VersionLedger:
        return self._ledger

    @property
    def access(self) -> AccessPolicy:
        return self._access

    @property
    def audit(self) -> AuditLog:
        return self._backend.audit

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    # ── Sessions ────────────────────────────────────────────────

    def with_session(
        self,
        key: str,
        holder: str,
        operation: LockOperation | str,
        fn: SessionFn,
        lease_duration: float | timedelta | None = None,
        wait_timeout: float | timedelta | None = None,
        expected_serial: int | None = None,
        info: str = "",
    ) -> SessionResult:
        """Run ``fn`` against the current state of ``key`` under its lock.

        ``fn`` returns the new payload, or ``None`` / raises ``Abort``
        to leave the state unchanged.  A payload identical to the base
        version is treated as unchanged.  ``expected_serial``, if given,
        must match the serial read under the lock.

        Raises:
            LockDenied / LockTimeout: The key is held by someone else.
            ConcurrentModification: The ledger moved outside the lock,
                or ``expected_serial`` is stale.
            LockLost / LeaseExpired: The lock was cleared or expired
                before commit.
            StateStoreError: Storage, integrity, or permission failures.
        """
        key = validate_key(key)
        operation = LockOperation(operation)
        self._access.require(holder, Role.WRITER, AuditAction.LOCK_ACQUIRE, key)

        lock = self._locks.acquire(key, holder, operation, lease_duration, wait_timeout, info)
        result: SessionResult | None = None
        failed = True
        with session_context(key, lock.lock_id), self._metrics.timer("sessions.duration_ms"):
            try:
                result = self._run_session(key, holder, operation, lock, fn, expected_serial)
                failed = False
            except BaseException as e:
                self._metrics.inc("sessions.failed")
                if isinstance(e, StateStoreError):
                    logger.error("Session on %s failed: %s", key, e)
                else:
                    logger.error("Session on %s aborted by %s: %s", key, type(e).__name__, e)
                raise
            finally:
                release_error = self._end_session(lock, holder, failed)
                if result is not None:
                    result.release_error = release_error
        return result

    def _run_session(
        self,
        key: str,
        holder: str,
        operation: LockOperation,
        lock: Lock,
        fn: SessionFn,
        expected_serial: int | None,
    ) -> SessionResult:
        snapshot = self._read_locked(key, holder, lock)
        base_serial = snapshot.serial if snapshot else 0

        if expected_serial is not None and expected_serial != base_serial:
            self._record(
                AuditAction.WRITE, key, holder, AuditOutcome.DENIED, lock_id=lock.lock_id,
                serial=base_serial, detail=f"expected serial {expected_serial}",
            )
            raise ConcurrentModification(
                f"Expected serial {expected_serial} but {key} is at serial {base_serial}",
                key=key,
                current_serial=base_serial,
                expected_serial=expected_serial,
            )

        state = SessionState(
            key=key,
            lock=lock,
            base_serial=base_serial,
            payload=snapshot.payload if snapshot else None,
            version=snapshot.version if snapshot else None,
            _locks=self._locks,
        )

        reason = ""
        try:
            new_payload = fn(state)
        except Abort as e:
            new_payload = None
            reason = str(e) or "aborted"

        if new_payload is not None and not isinstance(new_payload, (bytes, bytearray)):
            raise TypeError(
                f"Session function must return bytes or None, got {type(new_payload).__name__}"
            )

        if new_payload is not None and snapshot is not None and fingerprint_of(bytes(new_payload)) == snapshot.fingerprint:
            new_payload = None
            reason = "payload identical to current version"

        if new_payload is None:
            self._metrics.inc("sessions.unchanged")
            logger.info("Session on %s ended without changes (%s)", key, reason or "no new state")
            return SessionResult(
                key=key,
                status=SessionStatus.UNCHANGED,
                base_serial=base_serial,
                lock_id=state.lock.lock_id,
                reason=reason or "no new state",
            )

        version = self._commit_locked(
            key, holder, state.lock, base_serial, bytes(new_payload), note=operation.value
        )
        self._metrics.inc("sessions.committed")
        return SessionResult(
            key=key,
            status=SessionStatus.COMMITTED,
            base_serial=base_serial,
            lock_id=state.lock.lock_id,
            version=version,
        )

    def _end_session(self, lock: Lock, holder: str, failed: bool) -> StateStoreError | None:
        """Release the session lock. Never masks an in-flight error."""
        try:
            released = self._locks.release(lock.lock_id, holder)
        except StateStoreError as e:
            logger.error(
                "Could not release lock %s on %s: %s; it will need a force-unlock after %s",
                lock.lock_id, lock.key, e, lock.lease_expires_at.isoformat(timespec="seconds"),
            )
            self._record(
                AuditAction.LOCK_RELEASE, lock.key, holder, AuditOutcome.ERROR,
                lock_id=lock.lock_id, detail=str(e),
            )
            return e

        if not released:
            logger.warning("Lock %s on %s was no longer held at session end", lock.lock_id, lock.key)
            self._record(
                AuditAction.LOCK_RELEASE, lock.key, holder, AuditOutcome.DENIED,
                lock_id=lock.lock_id,
                detail="not held at session end" + (" (session failed)" if failed else ""),
            )
        return None

    def _read_locked(self, key: str, holder: str, lock: Lock) -> StateSnapshot | None:
        try:
            version = self._ledger.current_version(key)
            snapshot = self._ledger.read(key, version.serial) if version else None
        except StateStoreError as e:
            self._record(
                AuditAction.READ, key, holder, AuditOutcome.ERROR, lock_id=lock.lock_id, detail=str(e)
            )
            raise
        self._record(
            AuditAction.READ, key, holder, AuditOutcome.SUCCESS, lock_id=lock.lock_id,
            serial=snapshot.serial if snapshot else 0,
        )
        return snapshot

    def _commit_locked(
        self,
        key: str,
        principal: str,
        lock: Lock,
        base_serial: int,
        payload: bytes,
        note: str = "",
        restored_from: int | None = None,
        reason: str = "",
    ) -> StateVersion:
        """Fence on the lock, then commit. Audits the write attempt."""
        try:
            self._locks.verify(lock)
            version = self._ledger.commit(
                key, base_serial, payload, created_by=principal, note=note, restored_from=restored_from
            )
        except VersionConflict as e:
            self._record(
                AuditAction.WRITE, key, principal, AuditOutcome.DENIED, lock_id=lock.lock_id,
                serial=base_serial, reason=reason, detail=str(e),
            )
            logger.error(
                "CONCURRENT MODIFICATION on %s: base serial %d, ledger at %d; the lock was bypassed",
                key, base_serial, e.current_serial,
            )
            raise ConcurrentModification(
                f"State changed outside the lock: base serial {base_serial}, current serial {e.current_serial}",
                key=key,
                current_serial=e.current_serial,
                base_serial=base_serial,
            ) from e
        except StateStoreError as e:
            outcome = AuditOutcome.DENIED if isinstance(e, (LockLost, LeaseExpired)) else AuditOutcome.ERROR
            self._record(
                AuditAction.WRITE, key, principal, outcome, lock_id=lock.lock_id,
                serial=base_serial, reason=reason, detail=str(e),
            )
            raise

        self._record(
            AuditAction.WRITE, key, principal, AuditOutcome.SUCCESS, lock_id=lock.lock_id,
            serial=version.serial, reason=reason,
            detail=f"fingerprint {version.fingerprint[:12]}" + (f", restored from {restored_from}" if restored_from else ""),
        )
        return version

    # ── Split-phase API (remote clients) ────────────────────────

    def acquire_lock(
        self,
        key: str,
        principal: str,
        operation: LockOperation | str = LockOperation.MANUAL,
        lease_duration: float | timedelta | None = None,
        wait_timeout: float | timedelta | None = None,
        info: str = "",
    ) -> Lock:
        key = validate_key(key)
        self._access.require(principal, Role.WRITER, AuditAction.LOCK_ACQUIRE, key)
        return self._locks.acquire(key, principal, operation, lease_duration, wait_timeout, info)

    def renew_lock(self, lock_id: str, principal: str, lease_duration: float | timedelta | None = None) -> Lock:
        self._access.require(principal, Role.WRITER, AuditAction.LOCK_RENEW, lock_id=lock_id)
        return self._locks.renew(lock_id, lease_duration, principal)

    def release_lock(self, lock_id: str, principal: str) -> bool:
        """Returns False (NotHeld) if the lock is not held."""
        self._access.require(principal, Role.WRITER, AuditAction.LOCK_RELEASE, lock_id=lock_id)
        return self._locks.release(lock_id, principal)

    def force_unlock(self, key: str, lock_id: str, reason: str, principal: str) -> Lock:
        """Administrative force-release of exactly ``lock_id``."""
        key = validate_key(key)
        self._access.require(principal, Role.ADMIN, AuditAction.LOCK_FORCE_RELEASE, key, lock_id)
        return self._locks.force_release(key, lock_id, reason, principal)

    def get_lock(self, key: str, principal: str) -> Lock | None:
        key = validate_key(key)
        self._access.require(principal, Role.READER, AuditAction.READ, key)
        return self._locks.get(key)

    def list_locks(self, principal: str, stale_only: bool = False) -> list[Lock]:
        self._access.require(principal, Role.READER, AuditAction.READ)
        return self._locks.list_locks(stale_only=stale_only)

    def read(self, key: str, principal: str, serial: int | None = None) -> StateSnapshot:
        """Read the current (or a specific) version without locking.

        The result may be stale by the time it is used; mutate through
        ``with_session`` or a held lock.
        """
        key = validate_key(key)
        self._access.require(principal, Role.READER, AuditAction.READ, key)
        try:
            snapshot = self._ledger.current(key) if serial is None else self._ledger.read(key, serial)
        except StateStoreError as e:
            self._record(AuditAction.READ, key, principal, AuditOutcome.ERROR, serial=serial, detail=str(e))
            raise
        self._record(AuditAction.READ, key, principal, AuditOutcome.SUCCESS, serial=snapshot.serial)
        return snapshot

    def history(self, key: str, principal: str, **kwargs: Any) -> HistoryPage:
        key = validate_key(key)
        self._access.require(principal, Role.READER, AuditAction.READ, key)
        return self._ledger.history(key, **kwargs)

    def commit(self, key: str, lock_id: str, base_serial: int, payload: bytes, principal: str) -> StateVersion:
        """Commit through a lock the caller acquired earlier.

        Raises:
            LockLost: ``lock_id`` does not hold ``key``.
            LockMismatch: ``principal`` is not the lock holder.
            LeaseExpired: The lease ran out.
            VersionConflict: ``base_serial`` is stale (``current_serial`` attached).
        """
        key = validate_key(key)
        self._access.require(principal, Role.WRITER, AuditAction.WRITE, key, lock_id)
        lock = self._lock_for(key, lock_id, principal)
        try:
            self._locks.verify(lock)
            version = self._ledger.commit(key, base_serial, payload, created_by=principal)
        except StateStoreError as e:
            outcome = AuditOutcome.ERROR if e.code == ResultCode.STORAGE_UNAVAILABLE else AuditOutcome.DENIED
            self._record(
                AuditAction.WRITE, key, principal, outcome, lock_id=lock_id, serial=base_serial, detail=str(e)
            )
            raise
        self._record(
            AuditAction.WRITE, key, principal, AuditOutcome.SUCCESS, lock_id=lock_id, serial=version.serial,
            detail=f"fingerprint {version.fingerprint[:12]}",
        )
        return version

    def _lock_for(
        self, key: str, lock_id: str, principal: str, action: AuditAction = AuditAction.WRITE
    ) -> Lock:
        """The caller's own lock ``lock_id`` on ``key``."""
        lock = self._locks.find(lock_id)
        if lock is None or lock.key != key:
            self._record(
                action, key, principal, AuditOutcome.DENIED, lock_id=lock_id,
                detail="lock not held for this key",
            )
            raise LockLost(f"Lock {lock_id} does not hold {key}", key=key)
        self._locks.check_holder(lock, principal, action)
        return lock

    # ── Administrative ──────────────────────────────────────────

    def raw_restore(
        self,
        key: str,
        version_serial: int,
        reason: str,
        principal: str,
        lock_id: str | None = None,
        wait_timeout: float | timedelta | None = None,
    ) -> StateVersion:
        """Disaster-recovery push: re-commit the payload of ``version_serial``.

        Always creates a new serial; history is never rewritten.  Uses
        the caller's lock if ``lock_id`` is given, otherwise takes (and
        releases) its own.
        """
        key = validate_key(key)
        if not reason or not reason.strip():
            raise ValueError("raw_restore requires an administrative reason")
        self._access.require(principal, Role.ADMIN, AuditAction.WRITE, key, lock_id)

        def restore(lock: Lock) -> StateVersion:
            source = self._ledger.read(key, version_serial)
            base_serial = self._ledger.current_serial(key)
            version = self._commit_locked(
                key, principal, lock, base_serial, source.payload,
                note=f"restore of serial {version_serial}",
                restored_from=version_serial,
                reason=reason,
            )
            self._metrics.inc("state.restores")
            logger.warning(
                "RESTORE: %s serial %d re-committed as serial %d by %s (%s)",
                key, version_serial, version.serial, principal, reason,
            )
            return version

        return self._with_admin_lock(
            key, principal, lock_id, wait_timeout, f"restore serial {version_serial}", restore, AuditAction.WRITE
        )

    def prune(
        self,
        key: str,
        principal: str,
        reason: str,
        policy: RetentionPolicy | None = None,
        lock_id: str | None = None,
        wait_timeout: float | timedelta | None = None,
    ) -> list[StateVersion]:
        """Permanently remove old versions of ``key`` under its lock."""
        key = validate_key(key)
        if not reason or not reason.strip():
            raise ValueError("prune requires an administrative reason")
        self._access.require(principal, Role.ADMIN, AuditAction.PRUNE, key, lock_id)
        policy = policy or self._config.retention

        def prune(lock: Lock) -> list[StateVersion]:
            try:
                self._locks.verify(lock)
                removed = self._ledger.prune(key, policy, self._clock())
            except StateStoreError as e:
                self._record(AuditAction.PRUNE, key, principal, AuditOutcome.ERROR, lock_id=lock.lock_id, reason=reason, detail=str(e))
                raise
            self._record(
                AuditAction.PRUNE, key, principal, AuditOutcome.SUCCESS, lock_id=lock.lock_id, reason=reason,
                detail=f"removed {len(removed)}: " + ",".join(str(v.serial) for v in removed),
                context={"removed_serials": [v.serial for v in removed]},
            )
            return removed

        return self._with_admin_lock(key, principal, lock_id, wait_timeout, "prune", prune, AuditAction.PRUNE)

    def _with_admin_lock(
        self,
        key: str,
        principal: str,
        lock_id: str | None,
        wait_timeout: float | timedelta | None,
        info: str,
        body: Callable[[Lock], Any],
        action: AuditAction,
    ) -> Any:
        if lock_id is not None:
            return body(self._lock_for(key, lock_id, principal, action))

        lock = self._locks.acquire(key, principal, LockOperation.MANUAL, wait_timeout=wait_timeout, info=info)
        failed = True
        with session_context(key, lock.lock_id):
            try:
                result = body(lock)
                failed = False
                return result
            finally:
                release_error = self._end_session(lock, principal, failed)
                if release_error is not None and not failed:
                    raise release_error

    # ── Internal ────────────────────────────────────────────────

    def _record(
        self,
        action: AuditAction,
        key: str,
        principal: str,
        outcome: AuditOutcome,
        lock_id: str | None = None,
        serial: int | None = None,
        reason: str = "",
        detail: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        self._backend.audit.write(
            AuditRecord(
                key=key,
                lock_id=lock_id,
                principal=principal,
                action=action,
                outcome=outcome,
                serial=serial,
                reason=reason,
                detail=detail,
                context=context or {},
            )
        )
