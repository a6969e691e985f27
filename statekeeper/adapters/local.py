"""
Local backend — filesystem storage shared by processes on one host.

Layout under the store root::

    <root>/
      encryption.json                 salt + passphrase verifier (if enabled)
      audit.ndjson                    append-only audit log
      states/<quoted-key>/
        ledger.json                   version chain + current pointer
        lock.json                     the key's lock slot (absent = free)
        .guard                        flock(2) target for conditional writes
        blobs/<aa>/<content_id>       payload blobs

Keys are percent-quoted into one directory name (``prod/vpc`` →
``prod%2Fvpc``) so nested keys never collide with a namespace's own
files.  Every conditional write (lock slot, ledger compare-and-swap)
happens under an exclusive ``flock`` on the namespace's guard file,
which serializes writers across threads and processes.  Files are
replaced atomically; a crash never leaves a torn record.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote, unquote

from statekeeper.adapters.base import BlobStore, LedgerIndex, LockBackend, StorageBackend
from statekeeper.adapters.crypto import BlobCipher
from statekeeper.core.errors import CorruptState, StorageUnavailable, VersionConflict
from statekeeper.core.models.lock import Lock
from statekeeper.core.models.version import LedgerRecord
from statekeeper.core.persistence.atomic import read_json, write_bytes_atomic, write_json_atomic
from statekeeper.core.persistence.audit import DEFAULT_AUDIT_FILE, AuditLog

logger = logging.getLogger(__name__)

STATES_DIR = "states"
LEDGER_FILE = "ledger.json"
LOCK_FILE = "lock.json"
GUARD_FILE = ".guard"
BLOBS_DIR = "blobs"
ENCRYPTION_FILE = "encryption.json"


def namespace_dir(root: Path, key: str) -> Path:
    return root / STATES_DIR / quote(key, safe="")


@contextmanager
def _storage_errors(key: str, what: str) -> Iterator[None]:
    """Map OS-level failures onto ``StorageUnavailable``."""
    try:
        yield
    except OSError as e:
        raise StorageUnavailable(f"Cannot {what}: {e}", key=key) from e


@contextmanager
def _guard(ns_dir: Path, key: str) -> Iterator[None]:
    """Exclusive cross-process lock on a namespace."""
    with _storage_errors(key, "open namespace guard"):
        ns_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(ns_dir / GUARD_FILE, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        with _storage_errors(key, "lock namespace guard"):
            fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def _list_namespaces(root: Path, filename: str) -> list[str]:
    states = root / STATES_DIR
    if not states.is_dir():
        return []
    return sorted(unquote(p.name) for p in states.iterdir() if (p / filename).is_file())


# ── Blobs ───────────────────────────────────────────────────────


class LocalBlobStore(BlobStore):
    def __init__(self, root: Path, namespace: str, cipher: BlobCipher | None = None):
        super().__init__(namespace, cipher)
        self._dir = namespace_dir(root, namespace) / BLOBS_DIR

    def _path(self, content_id: str) -> Path:
        return self._dir / content_id[:2] / content_id

    def _read_raw(self, content_id: str) -> bytes | None:
        with _storage_errors(self.namespace, f"read blob {content_id[:12]}"):
            try:
                return self._path(content_id).read_bytes()
            except FileNotFoundError:
                return None

    def _write_raw(self, content_id: str, data: bytes) -> None:
        with _storage_errors(self.namespace, f"write blob {content_id[:12]}"):
            write_bytes_atomic(self._path(content_id), data)

    def _delete_raw(self, content_id: str) -> bool:
        path = self._path(content_id)
        with _storage_errors(self.namespace, f"delete blob {content_id[:12]}"):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def exists(self, content_id: str) -> bool:
        return self._path(content_id).is_file()

    def list_ids(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.name for p in self._dir.glob("*/*") if p.is_file())


# ── Ledger index ────────────────────────────────────────────────


class LocalLedgerIndex(LedgerIndex):
    def __init__(self, root: Path):
        self._root = root

    def _read(self, key: str) -> LedgerRecord | None:
        path = namespace_dir(self._root, key) / LEDGER_FILE
        with _storage_errors(key, "read ledger"):
            try:
                data = read_json(path)
            except json.JSONDecodeError as e:
                raise CorruptState(f"Ledger file {path} is not valid JSON: {e}", key=key) from e
        if data is None:
            return None
        try:
            return LedgerRecord.model_validate(data)
        except ValueError as e:
            raise CorruptState(f"Ledger file {path} failed validation: {e}", key=key) from e

    def load(self, key: str) -> LedgerRecord | None:
        return self._read(key)

    def save(self, record: LedgerRecord, expected_serial: int) -> None:
        ns = namespace_dir(self._root, record.key)
        with _guard(ns, record.key):
            stored = self._read(record.key)
            stored_serial = stored.current_serial if stored else 0
            if stored_serial != expected_serial:
                raise VersionConflict(
                    f"Ledger moved to serial {stored_serial} (expected {expected_serial})",
                    key=record.key,
                    current_serial=stored_serial,
                )
            with _storage_errors(record.key, "write ledger"):
                write_json_atomic(ns / LEDGER_FILE, record.model_dump(mode="json"))

    def keys(self) -> list[str]:
        with _storage_errors("", "list ledger keys"):
            return _list_namespaces(self._root, LEDGER_FILE)


# ── Lock slots ──────────────────────────────────────────────────


class LocalLockBackend(LockBackend):
    def __init__(self, root: Path):
        self._root = root

    def _slot(self, key: str) -> Path:
        return namespace_dir(self._root, key) / LOCK_FILE

    def read(self, key: str) -> Lock | None:
        path = self._slot(key)
        with _storage_errors(key, "read lock slot"):
            try:
                data = read_json(path)
            except json.JSONDecodeError as e:
                raise CorruptState(f"Lock slot {path} is not valid JSON: {e}", key=key) from e
        if data is None:
            return None
        try:
            return Lock.model_validate(data)
        except ValueError as e:
            raise CorruptState(f"Lock slot {path} failed validation: {e}", key=key) from e

    def put_if_absent(self, lock: Lock) -> Lock:
        with _guard(namespace_dir(self._root, lock.key), lock.key):
            current = self.read(lock.key)
            if current is not None:
                return current
            with _storage_errors(lock.key, "write lock slot"):
                write_json_atomic(self._slot(lock.key), lock.model_dump(mode="json"))
            return lock

    def compare_and_swap(self, key: str, expected_lock_id: str, new: Lock | None) -> bool:
        with _guard(namespace_dir(self._root, key), key):
            current = self.read(key)
            if current is None or current.lock_id != expected_lock_id:
                return False
            with _storage_errors(key, "update lock slot"):
                if new is None:
                    self._slot(key).unlink()
                else:
                    write_json_atomic(self._slot(key), new.model_dump(mode="json"))
            return True

    def list_locks(self) -> list[Lock]:
        with _storage_errors("", "list lock slots"):
            keys = _list_namespaces(self._root, LOCK_FILE)
        locks = []
        for key in keys:
            lock = self.read(key)
            if lock is not None:
                locks.append(lock)
        return locks


# ── Factory ─────────────────────────────────────────────────────


def load_cipher(root: Path, passphrase: str, iterations: int) -> BlobCipher:
    """Open (or initialize) the store's encryption header."""
    from statekeeper.adapters.crypto import new_salt

    header_path = root / ENCRYPTION_FILE
    header = read_json(header_path)
    if header is not None:
        return BlobCipher.from_header(passphrase, header)

    cipher = BlobCipher(passphrase, new_salt(), iterations)
    write_json_atomic(header_path, cipher.header())
    logger.info("Initialized encryption header at %s", header_path)
    return cipher


def create_local_backend(
    root: Path,
    cipher: BlobCipher | None = None,
    name: str = "local",
) -> StorageBackend:
    """Build a backend rooted at ``root`` (created if missing)."""
    root = root.resolve()
    with _storage_errors("", f"create store root {root}"):
        (root / STATES_DIR).mkdir(parents=True, exist_ok=True)

    return StorageBackend(
        name=name,
        index=LocalLedgerIndex(root),
        locks=LocalLockBackend(root),
        audit=AuditLog(path=root / DEFAULT_AUDIT_FILE),
        blob_factory=lambda key: LocalBlobStore(root, key, cipher),
        location=str(root),
    )
