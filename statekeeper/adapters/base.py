"""
Storage adapter base — the contracts every backend implements.

A backend is a bundle of three capabilities, each with its own
interface, so a concrete product (object store + conditional writes,
blob leases, a database row lock, ...) can be adapted piecewise:

    BlobStore    content-addressed payload bytes, one namespace per key
    LedgerIndex  per-key version chain + current pointer (compare-and-swap)
    LockBackend  one lock slot per key (put-if-absent / compare-and-swap)

The coordinator only talks to storage through these interfaces.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from statekeeper.core.errors import CorruptState, StateNotFound
from statekeeper.core.models.lock import Lock
from statekeeper.core.models.version import LedgerRecord, fingerprint_of
from statekeeper.core.persistence.audit import AuditLog
from statekeeper.core.reliability.circuit_breaker import CircuitBreakerRegistry

if TYPE_CHECKING:
    from statekeeper.adapters.crypto import BlobCipher

logger = logging.getLogger(__name__)


# ── Blob store ──────────────────────────────────────────────────


class BlobStore(ABC):
    """Content-addressed payload storage for one key namespace.

    ``content_id`` is the SHA-256 fingerprint of the plaintext payload,
    so identical payloads share one blob.  Subclasses implement the raw
    byte primitives; integrity checks and encryption live here.
    """

    def __init__(self, namespace: str, cipher: BlobCipher | None = None):
        self.namespace = namespace
        self._cipher = cipher

    # -- raw primitives ------------------------------------------

    @abstractmethod
    def _read_raw(self, content_id: str) -> bytes | None:
        """Stored bytes, or None if absent."""

    @abstractmethod
    def _write_raw(self, content_id: str, data: bytes) -> None:
        """Durably store bytes under ``content_id``."""

    @abstractmethod
    def _delete_raw(self, content_id: str) -> bool:
        """Remove the blob. Returns False if it did not exist."""

    @abstractmethod
    def exists(self, content_id: str) -> bool:
        """Whether a blob with this id is stored."""

    @abstractmethod
    def list_ids(self) -> list[str]:
        """All stored content ids in this namespace."""

    # -- contract ------------------------------------------------

    def put(self, fingerprint: str, payload: bytes) -> str:
        """Store ``payload`` and return its content id. Idempotent.

        Raises:
            CorruptState: ``fingerprint`` does not match ``payload``.
            StorageUnavailable: The backend could not be reached.
        """
        actual = fingerprint_of(payload)
        if actual != fingerprint:
            raise CorruptState(
                "Payload does not match the supplied fingerprint",
                key=self.namespace,
                expected=fingerprint,
                actual=actual,
                next_action="Recompute the fingerprint from the payload being written.",
            )

        content_id = fingerprint
        if self.exists(content_id):
            logger.debug("Blob %s/%s already stored", self.namespace, content_id[:12])
            return content_id

        data = self._cipher.encrypt(content_id, payload) if self._cipher else payload
        self._write_raw(content_id, data)
        logger.debug("Stored blob %s/%s (%d bytes)", self.namespace, content_id[:12], len(payload))
        return content_id

    def get(self, content_id: str) -> bytes:
        """Fetch and verify a payload.

        Raises:
            StateNotFound: No blob with this id.
            CorruptState: Stored bytes do not hash to ``content_id``.
        """
        data = self._read_raw(content_id)
        if data is None:
            raise StateNotFound(f"Blob {content_id} not found", key=self.namespace)

        from statekeeper.adapters.crypto import is_envelope, open_envelope

        if is_envelope(data):
            payload = open_envelope(self._cipher, content_id, data, key=self.namespace)
        else:
            payload = data

        actual = fingerprint_of(payload)
        if actual != content_id:
            raise CorruptState(
                f"Blob {content_id[:12]} failed its integrity check",
                key=self.namespace,
                expected=content_id,
                actual=actual,
            )
        return payload

    def delete(self, content_id: str) -> bool:
        """Remove a blob. Only the ledger's pruning path calls this."""
        removed = self._delete_raw(content_id)
        if removed:
            logger.info("Deleted blob %s/%s", self.namespace, content_id[:12])
        return removed


# ── Ledger index ────────────────────────────────────────────────


class LedgerIndex(ABC):
    """Per-key ledger records with compare-and-swap saves."""

    @abstractmethod
    def load(self, key: str) -> LedgerRecord | None:
        """The key's ledger record, or None if never written."""

    @abstractmethod
    def save(self, record: LedgerRecord, expected_serial: int) -> None:
        """Store ``record`` only if the stored current serial is ``expected_serial``.

        A missing record counts as serial 0.

        Raises:
            VersionConflict: The stored serial differs.
        """

    @abstractmethod
    def keys(self) -> list[str]:
        """All keys with a ledger record, sorted."""


# ── Lock slot ───────────────────────────────────────────────────


class LockBackend(ABC):
    """One lock slot per key with conditional-write semantics.

    ``capabilities`` advertises optional features:
        ``notify`` — ``wait_for_change`` wakes early when a slot changes.
    """

    capabilities: frozenset[str] = frozenset()

    @abstractmethod
    def read(self, key: str) -> Lock | None:
        """Current occupant of the key's slot."""

    @abstractmethod
    def put_if_absent(self, lock: Lock) -> Lock:
        """Occupy the slot if empty. Returns the slot's occupant afterwards.

        The caller won iff the returned lock's ``lock_id`` is its own.
        """

    @abstractmethod
    def compare_and_swap(self, key: str, expected_lock_id: str, new: Lock | None) -> bool:
        """Replace (``new``) or clear (``None``) the slot iff it holds ``expected_lock_id``."""

    @abstractmethod
    def list_locks(self) -> list[Lock]:
        """All occupied slots."""

    def find(self, lock_id: str) -> Lock | None:
        """Locate a lock by id (scan)."""
        for lock in self.list_locks():
            if lock.lock_id == lock_id:
                return lock
        return None

    def wait_for_change(self, key: str, timeout: float) -> None:
        """Block up to ``timeout`` seconds or until the slot may have changed."""
        time.sleep(timeout)


# ── Bundle ──────────────────────────────────────────────────────


@dataclass
class StorageBackend:
    """A configured backend: blob namespaces, ledger index, lock slots, audit."""

    name: str
    index: LedgerIndex
    locks: LockBackend
    audit: AuditLog
    blob_factory: Callable[[str], BlobStore]
    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    location: str = ""
    _blob_cache: dict[str, BlobStore] = field(default_factory=dict, repr=False)
    _blob_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def blobs(self, key: str) -> BlobStore:
        """The blob namespace for ``key``; one store per key for the backend's lifetime."""
        with self._blob_lock:
            store = self._blob_cache.get(key)
            if store is None:
                store = self.blob_factory(key)
                self._blob_cache[key] = store
            return store

    def describe(self) -> dict[str, str]:
        return {"name": self.name, "location": self.location}
