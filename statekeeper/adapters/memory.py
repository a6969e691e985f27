"""
Memory backend — in-process storage for tests and single-process use.

Thread-safe.  Each component can be told to fail its next N calls with
``StorageUnavailable`` (``fail_next``) and blobs can be overwritten in
place (``tamper``), so reliability and integrity paths are testable
without a real outage.
"""

from __future__ import annotations

import threading

from statekeeper.adapters.base import BlobStore, LedgerIndex, LockBackend, StorageBackend
from statekeeper.adapters.crypto import BlobCipher
from statekeeper.core.errors import StorageUnavailable, VersionConflict
from statekeeper.core.models.lock import Lock
from statekeeper.core.models.version import LedgerRecord
from statekeeper.core.persistence.audit import AuditLog


class _FaultInjector:
    """Counts down injected failures."""

    def __init__(self, component: str):
        self._component = component
        self._remaining = 0
        self._lock = threading.Lock()

    def fail_next(self, n: int = 1) -> None:
        with self._lock:
            self._remaining = n

    def check(self, key: str = "") -> None:
        with self._lock:
            if self._remaining <= 0:
                return
            self._remaining -= 1
        raise StorageUnavailable(f"[injected] {self._component} unavailable", key=key)


class MemoryBlobStore(BlobStore):
    def __init__(self, namespace: str, cipher: BlobCipher | None = None):
        super().__init__(namespace, cipher)
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.faults = _FaultInjector(f"blob store {namespace}")
        self.write_count = 0

    def _read_raw(self, content_id: str) -> bytes | None:
        self.faults.check(self.namespace)
        with self._lock:
            return self._blobs.get(content_id)

    def _write_raw(self, content_id: str, data: bytes) -> None:
        self.faults.check(self.namespace)
        with self._lock:
            self._blobs[content_id] = data
            self.write_count += 1

    def _delete_raw(self, content_id: str) -> bool:
        with self._lock:
            return self._blobs.pop(content_id, None) is not None

    def exists(self, content_id: str) -> bool:
        self.faults.check(self.namespace)
        with self._lock:
            return content_id in self._blobs

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)

    def tamper(self, content_id: str, data: bytes) -> None:
        """Overwrite stored bytes without any checks."""
        with self._lock:
            self._blobs[content_id] = data


class MemoryLedgerIndex(LedgerIndex):
    def __init__(self) -> None:
        self._records: dict[str, str] = {}      # key → JSON, so callers never share objects
        self._lock = threading.Lock()
        self.faults = _FaultInjector("ledger index")

    def load(self, key: str) -> LedgerRecord | None:
        self.faults.check(key)
        with self._lock:
            raw = self._records.get(key)
        return LedgerRecord.model_validate_json(raw) if raw is not None else None

    def save(self, record: LedgerRecord, expected_serial: int) -> None:
        self.faults.check(record.key)
        with self._lock:
            raw = self._records.get(record.key)
            stored = LedgerRecord.model_validate_json(raw).current_serial if raw else 0
            if stored != expected_serial:
                raise VersionConflict(
                    f"Ledger moved to serial {stored} (expected {expected_serial})",
                    key=record.key,
                    current_serial=stored,
                )
            self._records[record.key] = record.model_dump_json()

    def keys(self) -> list[str]:
        self.faults.check()
        with self._lock:
            return sorted(self._records)


class MemoryLockBackend(LockBackend):
    capabilities = frozenset({"notify"})

    def __init__(self) -> None:
        self._slots: dict[str, Lock] = {}
        self._cond = threading.Condition()
        self.faults = _FaultInjector("lock backend")

    def read(self, key: str) -> Lock | None:
        self.faults.check(key)
        with self._cond:
            return self._slots.get(key)

    def put_if_absent(self, lock: Lock) -> Lock:
        self.faults.check(lock.key)
        with self._cond:
            current = self._slots.get(lock.key)
            if current is not None:
                return current
            self._slots[lock.key] = lock
            self._cond.notify_all()
            return lock

    def compare_and_swap(self, key: str, expected_lock_id: str, new: Lock | None) -> bool:
        self.faults.check(key)
        with self._cond:
            current = self._slots.get(key)
            if current is None or current.lock_id != expected_lock_id:
                return False
            if new is None:
                del self._slots[key]
            else:
                self._slots[key] = new
            self._cond.notify_all()
            return True

    def list_locks(self) -> list[Lock]:
        with self._cond:
            return sorted(self._slots.values(), key=lambda lk: lk.key)

    def wait_for_change(self, key: str, timeout: float) -> None:
        with self._cond:
            self._cond.wait(timeout)


def create_memory_backend(
    cipher: BlobCipher | None = None,
    audit: AuditLog | None = None,
    name: str = "memory",
) -> StorageBackend:
    """Build a fresh, empty in-memory backend."""
    return StorageBackend(
        name=name,
        index=MemoryLedgerIndex(),
        locks=MemoryLockBackend(),
        audit=audit or AuditLog(),
        blob_factory=lambda key: MemoryBlobStore(key, cipher),
        location="memory",
    )
