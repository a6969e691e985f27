"""
Error taxonomy — every failure the coordinator can surface.

Each error carries a result code (the taxonomy a CLI or HTTP client
sees), the state key it concerns, and a concrete next action for the
operator.  Nothing here is retried automatically except
``StorageUnavailable``, and only at the storage boundary.

Kinds:
    Contention   → LockDenied, LockTimeout        (caller may retry/wait)
    Conflict     → ConcurrentModification         (fatal to the session)
    Integrity    → CorruptState                   (fatal, manual recovery)
    Transient    → StorageUnavailable             (bounded retry)
    Authorization→ PermissionDenied               (fatal)
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from statekeeper.core.models.lock import Lock


class ResultCode(StrEnum):
    """Result taxonomy returned to the orchestrating layer."""

    OK = "OK"
    LOCK_TIMEOUT = "LockTimeout"
    LOCK_DENIED = "LockDenied"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    NOT_FOUND = "NotFound"
    STORAGE_UNAVAILABLE = "StorageUnavailable"
    CORRUPT = "Corrupt"
    PERMISSION_DENIED = "PermissionDenied"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_EXIT_CODES: dict[ResultCode, int] = {
    ResultCode.OK: 0,
    ResultCode.LOCK_TIMEOUT: 3,
    ResultCode.LOCK_DENIED: 4,
    ResultCode.CONCURRENT_MODIFICATION: 5,
    ResultCode.NOT_FOUND: 6,
    ResultCode.STORAGE_UNAVAILABLE: 7,
    ResultCode.CORRUPT: 8,
    ResultCode.PERMISSION_DENIED: 9,
}

_HTTP_STATUS: dict[ResultCode, int] = {
    ResultCode.OK: 200,
    ResultCode.LOCK_TIMEOUT: 423,
    ResultCode.LOCK_DENIED: 423,
    ResultCode.CONCURRENT_MODIFICATION: 409,
    ResultCode.NOT_FOUND: 404,
    ResultCode.STORAGE_UNAVAILABLE: 503,
    ResultCode.CORRUPT: 500,
    ResultCode.PERMISSION_DENIED: 403,
}


class StateStoreError(Exception):
    """Base class for all coordinator failures."""

    code: ResultCode = ResultCode.STORAGE_UNAVAILABLE
    default_next_action = "Retry the operation."

    def __init__(
        self,
        message: str,
        *,
        key: str = "",
        next_action: str | None = None,
        **detail: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.key = key
        self.next_action = next_action or self.default_next_action
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error": self.code.value,
            "message": self.message,
            "key": self.key,
            "next_action": self.next_action,
        }
        for name, value in self.detail.items():
            data[name] = value.model_dump(mode="json") if hasattr(value, "model_dump") else value
        return data

    def __str__(self) -> str:
        where = f" [{self.key}]" if self.key else ""
        return f"{self.code.value}{where}: {self.message}"


# ── Contention ──────────────────────────────────────────────────


class LockDenied(StateStoreError):
    """The key is locked by someone else and the caller did not wait."""

    code = ResultCode.LOCK_DENIED
    default_next_action = "Wait for the current holder to finish, then retry."

    def __init__(self, message: str, *, key: str = "", current: Lock | None = None, **kw: Any):
        super().__init__(message, key=key, **kw)
        self.current = current
        if current is not None:
            self.detail.setdefault("current_holder", current.holder)
            self.detail.setdefault("current_operation", current.operation.value)
            self.detail.setdefault("since", current.acquired_at.isoformat())
            self.detail.setdefault("lock_id", current.lock_id)
            self.detail.setdefault("lease_expires_at", current.lease_expires_at.isoformat())


class LockTimeout(LockDenied):
    """The lock did not clear within ``wait_timeout``."""

    code = ResultCode.LOCK_TIMEOUT
    default_next_action = (
        "Retry later or with a longer wait timeout. If the holder crashed, ask an "
        "administrator to force-unlock once the lease has expired."
    )


class LeaseExpired(StateStoreError):
    """The caller's lease ran out before it was renewed."""

    code = ResultCode.LOCK_DENIED
    default_next_action = (
        "Release the lock and acquire a new one; renew the lease periodically "
        "during long operations."
    )


class LockMismatch(StateStoreError):
    """The lock named is not the one the caller may act on.

    Raised when a force-unlock names a lock that no longer occupies the
    slot, and when someone other than the holder tries to renew,
    release, or commit through a lock.
    """

    code = ResultCode.LOCK_DENIED
    default_next_action = "Inspect the key with 'statekeeper lock show' and retry with the exact lock ID."


# ── Conflict ────────────────────────────────────────────────────


class ConcurrentModification(StateStoreError):
    """Something wrote to the key outside this session's lock."""

    code = ResultCode.CONCURRENT_MODIFICATION
    default_next_action = (
        "Abort this run, pull the latest state and re-plan. Do not force the write."
    )


class VersionConflict(ConcurrentModification):
    """Commit rejected: ``base_serial`` does not match the current serial."""

    def __init__(self, message: str, *, key: str = "", current_serial: int = 0, **kw: Any):
        super().__init__(message, key=key, current_serial=current_serial, **kw)
        self.current_serial = current_serial


class LockLost(ConcurrentModification):
    """The session's lock was force-released or replaced while it was working."""

    default_next_action = (
        "Another writer may now hold the key. Stop, pull the latest state and re-plan."
    )


# ── Lookup / infrastructure / integrity / authorization ────────


class StateNotFound(StateStoreError):
    code = ResultCode.NOT_FOUND
    default_next_action = "Check the key spelling with 'statekeeper status'."


class StorageUnavailable(StateStoreError):
    code = ResultCode.STORAGE_UNAVAILABLE
    default_next_action = "The storage backend is unreachable; retry with backoff."


class CorruptState(StateStoreError):
    """Fingerprint mismatch on read. Never repaired automatically."""

    code = ResultCode.CORRUPT

    def __init__(
        self,
        message: str,
        *,
        key: str = "",
        serial: int | None = None,
        expected: str = "",
        actual: str = "",
        **kw: Any,
    ) -> None:
        next_action = kw.pop("next_action", None) or (
            f"Restore from a prior serial (e.g. 'statekeeper state restore {key} "
            f"{serial - 1 if serial and serial > 1 else 'N'}') after inspecting history."
        )
        super().__init__(
            message,
            key=key,
            next_action=next_action,
            serial=serial,
            expected_fingerprint=expected,
            actual_fingerprint=actual,
            **kw,
        )
        self.serial = serial
        self.expected = expected
        self.actual = actual


class PermissionDenied(StateStoreError):
    code = ResultCode.PERMISSION_DENIED
    default_next_action = "Contact a state administrator."
