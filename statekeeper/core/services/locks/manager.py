"""
Lock manager — mutual exclusion per state key, with leases.

The lock manager exclusively owns the lock lifecycle.  It never
reaches past the ``LockBackend`` contract: every grant is a
put-if-absent on the key's slot, every renew/release/force-release is
a compare-and-swap against the exact lock id.  That is what makes
"at most one live lock per key" hold across threads and processes.

Stale locks (lease expired, never released) keep occupying the slot.
They are reported, never reused: clearing one is an explicit,
reasoned, audited ``force_release``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime, timedelta
from typing import Callable

from statekeeper.adapters.base import LockBackend
from statekeeper.core.errors import (
    LeaseExpired,
    LockDenied,
    LockLost,
    LockMismatch,
    LockTimeout,
)
from statekeeper.core.models.config import LockingConfig
from statekeeper.core.models.keys import validate_key
from statekeeper.core.models.lock import Lock, LockOperation, utc_now
from statekeeper.core.observability.metrics import MetricsRegistry
from statekeeper.core.persistence.audit import AuditAction, AuditLog, AuditOutcome, AuditRecord
from statekeeper.core.reliability.guarded import StorageGuard

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _seconds(value: float | timedelta | None, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class LockManager:
    """Acquire, renew, release, and force-release key locks.

    Args:
        backend: The lock-slot adapter.
        audit: Where lock events are recorded.
        guard: Breaker + retry wrapper for slot I/O.
        config: Default lease and wait settings.
        metrics: Optional metrics registry.
        clock: Source of "now" for leases (injectable for tests).
    """

    def __init__(
        self,
        backend: LockBackend,
        audit: AuditLog,
        guard: StorageGuard,
        config: LockingConfig | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Clock = utc_now,
    ):
        self._backend = backend
        self._audit = audit
        self._guard = guard
        self._config = config or LockingConfig()
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._known: dict[str, str] = {}          # lock_id → key, for locks granted here
        self._known_lock = threading.Lock()

    @property
    def config(self) -> LockingConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # ── Queries ─────────────────────────────────────────────────

    def get(self, key: str) -> Lock | None:
        """Current lock on ``key`` (possibly stale), or None."""
        key = validate_key(key)
        return self._guard.call("lock.read", lambda: self._backend.read(key), key=key)

    def list_locks(self, stale_only: bool = False) -> list[Lock]:
        """Occupied slots; also refreshes the ``locks.held`` / ``locks.stale`` gauges."""
        locks = self._guard.call("lock.list", self._backend.list_locks)
        now = self.now()
        stale = [lk for lk in locks if lk.is_stale(now)]
        self._metrics.set_gauge("locks.held", len(locks))
        self._metrics.set_gauge("locks.stale", len(stale))
        return stale if stale_only else locks

    def find(self, lock_id: str) -> Lock | None:
        """Locate a lock by id, using the local grant cache first."""
        with self._known_lock:
            key = self._known.get(lock_id)
        if key is not None:
            lock = self._guard.call("lock.read", lambda: self._backend.read(key), key=key)
            if lock is not None and lock.lock_id == lock_id:
                return lock
            return None
        return self._guard.call("lock.find", lambda: self._backend.find(lock_id))

    # ── Acquire ─────────────────────────────────────────────────

    def acquire(
        self,
        key: str,
        holder: str,
        operation: LockOperation | str = LockOperation.MANUAL,
        lease_duration: float | timedelta | None = None,
        wait_timeout: float | timedelta | None = None,
        info: str = "",
    ) -> Lock:
        """Take the lock on ``key``, waiting up to ``wait_timeout`` seconds.

        Raises:
            LockDenied: Held by someone else and ``wait_timeout`` is zero.
            LockTimeout: Still held when ``wait_timeout`` elapsed.
            ValueError: Invalid key, holder, or durations.
        """
        key = validate_key(key)
        if not holder:
            raise ValueError("Lock holder must not be empty")
        operation = LockOperation(operation)
        lease = _seconds(lease_duration, self._config.lease_seconds)
        wait = _seconds(wait_timeout, self._config.wait_timeout)
        if lease <= 0:
            raise ValueError("lease_duration must be greater than zero")
        if wait < 0:
            raise ValueError("wait_timeout must not be negative")

        started = time.monotonic()
        deadline = started + wait
        delay = self._config.poll_interval
        waited_logged = False

        while True:
            now = self.now()
            candidate = Lock(
                key=key,
                holder=holder,
                operation=operation,
                acquired_at=now,
                lease_expires_at=now + timedelta(seconds=lease),
                info=info,
            )
            try:
                occupant = self._guard.call(
                    "lock.acquire", lambda: self._backend.put_if_absent(candidate), key=key
                )
            except Exception as e:
                self._record(AuditAction.LOCK_ACQUIRE, key, holder, AuditOutcome.ERROR, detail=str(e))
                raise

            if occupant.lock_id == candidate.lock_id:
                self._remember(candidate)
                waited_ms = (time.monotonic() - started) * 1000
                self._metrics.inc("locks.acquired")
                self._metrics.observe("locks.wait_ms", waited_ms)
                self._record(
                    AuditAction.LOCK_ACQUIRE,
                    key,
                    holder,
                    AuditOutcome.SUCCESS,
                    lock_id=candidate.lock_id,
                    detail=f"{operation.value}, lease {lease:g}s",
                )
                logger.info("Lock acquired on %s by %s (%s)", key, holder, operation.value)
                return candidate

            stale = occupant.is_stale(self.now())
            remaining = deadline - time.monotonic()
            if wait == 0 or remaining <= 0:
                raise self._deny(key, holder, occupant, stale, timed_out=wait > 0)

            if not waited_logged:
                logger.warning("Waiting up to %gs for lock on %s: %s", wait, key, occupant.describe())
                waited_logged = True

            pause = min(delay, remaining)
            self._backend.wait_for_change(key, pause)
            if "notify" not in self._backend.capabilities:
                delay = min(delay * 2, self._config.max_poll_interval)
                delay += random.uniform(0, delay * 0.1)

    def _deny(self, key: str, holder: str, occupant: Lock, stale: bool, timed_out: bool) -> LockDenied:
        error_cls = LockTimeout if timed_out else LockDenied
        self._metrics.inc("locks.timeout" if timed_out else "locks.denied")
        message = f"State is locked: {occupant.describe()}"
        next_action = None
        if stale:
            message += f"; lease expired at {occupant.lease_expires_at.isoformat(timespec='seconds')}"
            next_action = (
                f"The holder appears to have crashed. An administrator may run "
                f"'statekeeper lock force-unlock {key} {occupant.lock_id} --reason ...'."
            )
        self._record(
            AuditAction.LOCK_ACQUIRE,
            key,
            holder,
            AuditOutcome.DENIED,
            lock_id=occupant.lock_id,
            detail=("timed out; " if timed_out else "") + occupant.describe(),
        )
        logger.warning("Lock denied on %s for %s: %s", key, holder, occupant.describe())
        return error_cls(message, key=key, current=occupant, next_action=next_action, stale=stale)

    # ── Renew / release ─────────────────────────────────────────

    def renew(
        self,
        lock_id: str,
        lease_duration: float | timedelta | None = None,
        principal: str | None = None,
    ) -> Lock:
        """Extend a live lease from now.

        ``principal``, when given, must be the lock's holder.

        Raises:
            LeaseExpired: The lock is gone (released, force-released) or
                its lease already ran out.
            LockMismatch: ``principal`` does not hold the lock.
        """
        lease = _seconds(lease_duration, self._config.lease_seconds)
        if lease <= 0:
            raise ValueError("lease_duration must be greater than zero")

        current = self.find(lock_id)
        if current is None:
            raise LeaseExpired(f"Lock {lock_id} is no longer held")
        self.check_holder(current, principal, AuditAction.LOCK_RENEW)

        now = self.now()
        if current.is_stale(now):
            self._record(
                AuditAction.LOCK_RENEW, current.key, current.holder, AuditOutcome.DENIED,
                lock_id=lock_id, detail="lease already expired",
            )
            raise LeaseExpired(
                f"Lease on {current.key} expired at "
                f"{current.lease_expires_at.isoformat(timespec='seconds')}",
                key=current.key,
            )

        renewed = current.renewed(timedelta(seconds=lease), now)
        swapped = self._guard.call(
            "lock.renew",
            lambda: self._backend.compare_and_swap(current.key, lock_id, renewed),
            key=current.key,
        )
        if not swapped:
            raise LeaseExpired(f"Lock {lock_id} was released while renewing", key=current.key)

        self._record(
            AuditAction.LOCK_RENEW, current.key, current.holder, AuditOutcome.SUCCESS,
            lock_id=lock_id, detail=f"until {renewed.lease_expires_at.isoformat(timespec='seconds')}",
        )
        logger.debug("Lease on %s renewed until %s", current.key, renewed.lease_expires_at)
        return renewed

    def release(self, lock_id: str, principal: str | None = None) -> bool:
        """Cooperative release. Returns False if the lock is not held (NotHeld).

        ``principal``, when given, must be the lock's holder; anyone
        else has to go through ``force_release``.

        Raises:
            LockMismatch: ``principal`` does not hold the lock.
        """
        current = self.find(lock_id)
        if current is None:
            logger.info("Release of %s: not held", lock_id)
            return False
        self.check_holder(current, principal, AuditAction.LOCK_RELEASE)

        released = self._guard.call(
            "lock.release",
            lambda: self._backend.compare_and_swap(current.key, lock_id, None),
            key=current.key,
        )
        self._forget(lock_id)
        if not released:
            return False

        self._record(
            AuditAction.LOCK_RELEASE, current.key, current.holder, AuditOutcome.SUCCESS,
            lock_id=lock_id,
        )
        logger.info("Lock released on %s by %s", current.key, current.holder)
        return True

    def force_release(self, key: str, lock_id: str, reason: str, principal: str) -> Lock:
        """Administratively clear exactly ``lock_id`` from ``key``.

        Raises:
            ValueError: No reason given.
            LockMismatch: The slot is empty or holds a different lock.
        """
        key = validate_key(key)
        if not reason or not reason.strip():
            raise ValueError("force_release requires an administrative reason")

        current = self.get(key)
        cleared = False
        if current is not None and current.lock_id == lock_id:
            cleared = self._guard.call(
                "lock.force_release",
                lambda: self._backend.compare_and_swap(key, lock_id, None),
                key=key,
            )

        if current is None or not cleared:
            found = current.describe() if current else "no lock"
            self._record(
                AuditAction.LOCK_FORCE_RELEASE, key, principal, AuditOutcome.DENIED,
                lock_id=lock_id, reason=reason, detail=f"mismatch; slot has {found}",
            )
            raise LockMismatch(
                f"Lock {lock_id} is not the current lock on {key} (found {found})",
                key=key,
                current_lock_id=current.lock_id if current else None,
            )

        self._forget(lock_id)
        self._metrics.inc("locks.force_released")
        self._record(
            AuditAction.LOCK_FORCE_RELEASE, key, principal, AuditOutcome.SUCCESS,
            lock_id=lock_id, reason=reason, detail=current.describe(),
        )
        logger.warning(
            "Lock on %s FORCE-RELEASED by %s (%s); was %s", key, principal, reason, current.describe()
        )
        return current

    # ── Fencing ─────────────────────────────────────────────────

    def verify(self, lock: Lock) -> Lock:
        """Check that ``lock`` still occupies its slot with a live lease.

        Raises:
            LockLost: The slot is empty or holds another lock.
            LeaseExpired: The lease ran out.
        """
        current = self.get(lock.key)
        if current is None or current.lock_id != lock.lock_id:
            raise LockLost(
                f"Lock {lock.lock_id} on {lock.key} is no longer held"
                + (f"; slot now {current.describe()}" if current else ""),
                key=lock.key,
            )
        if current.is_stale(self.now()):
            raise LeaseExpired(
                f"Lease on {lock.key} expired at "
                f"{current.lease_expires_at.isoformat(timespec='seconds')}",
                key=lock.key,
            )
        return current

    def check_holder(self, lock: Lock, principal: str | None, action: AuditAction) -> None:
        """Refuse (and audit) ``action`` through ``lock`` by anyone but its holder.

        Raises:
            LockMismatch: ``principal`` is set and is not ``lock.holder``.
        """
        if principal is None or principal == lock.holder:
            return
        self._record(
            action, lock.key, principal, AuditOutcome.DENIED,
            lock_id=lock.lock_id, detail=f"not the holder; {lock.describe()}",
        )
        logger.warning(
            "%s through lock %s on %s refused: %s is not the holder (%s)",
            action.value, lock.lock_id, lock.key, principal, lock.holder,
        )
        raise LockMismatch(
            f"Lock {lock.lock_id} on {lock.key} is held by {lock.holder}, not {principal}",
            key=lock.key,
            current_lock_id=lock.lock_id,
            current_holder=lock.holder,
            next_action=(
                "Only the holder may renew, release, or commit through a lock. "
                "If the holder is gone, ask an administrator to force-unlock it."
            ),
        )

    # ── Internal ────────────────────────────────────────────────

    def _remember(self, lock: Lock) -> None:
        with self._known_lock:
            self._known[lock.lock_id] = lock.key

    def _forget(self, lock_id: str) -> None:
        with self._known_lock:
            self._known.pop(lock_id, None)

    def _record(
        self,
        action: AuditAction,
        key: str,
        principal: str,
        outcome: AuditOutcome,
        lock_id: str | None = None,
        reason: str = "",
        detail: str = "",
    ) -> None:
        self._audit.write(
            AuditRecord(
                key=key,
                lock_id=lock_id,
                principal=principal,
                action=action,
                outcome=outcome,
                reason=reason,
                detail=detail,
            )
        )
