"""
Tests for the local filesystem backend — layout, corruption, encryption.
"""

import json
from pathlib import Path

import pytest

from conftest import WRITER, make_config
from statekeeper.adapters.local import (
    ENCRYPTION_FILE,
    LEDGER_FILE,
    LOCK_FILE,
    create_local_backend,
    load_cipher,
    namespace_dir,
)
from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.errors import CorruptState, PermissionDenied, VersionConflict
from statekeeper.core.models.version import LedgerRecord, fingerprint_of

FAST_KDF = 1000
KEY = "prod/vpc"


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def local(root: Path, clock) -> StateCoordinator:
    return StateCoordinator(create_local_backend(root), config=make_config(), clock=clock)


class TestLayout:
    def test_files_on_disk(self, local, root):
        lock = local.acquire_lock(KEY, WRITER, "apply")
        ns = namespace_dir(root.resolve(), KEY)
        assert ns.name == "prod%2Fvpc"
        assert json.loads((ns / LOCK_FILE).read_text())["lock_id"] == lock.lock_id

        local.commit(KEY, lock.lock_id, 0, b"v1", WRITER)
        ledger = json.loads((ns / LEDGER_FILE).read_text())
        assert ledger["current_serial"] == 1

        content_id = fingerprint_of(b"v1")
        assert (ns / "blobs" / content_id[:2] / content_id).read_bytes() == b"v1"

        local.release_lock(lock.lock_id, WRITER)
        assert not (ns / LOCK_FILE).exists()
        assert (root / "audit.ndjson").is_file()

    def test_nested_keys_do_not_collide(self, local):
        local.with_session("prod", WRITER, "apply", lambda _s: b"parent")
        local.with_session("prod/vpc", WRITER, "apply", lambda _s: b"child")
        assert local.ledger.keys() == ["prod", "prod/vpc"]
        assert local.read("prod", WRITER).payload == b"parent"

    def test_state_survives_reopen(self, local, root, clock):
        local.with_session(KEY, WRITER, "apply", lambda _s: b"v1")
        held = local.acquire_lock("prod/dns", WRITER, "plan")

        reopened = StateCoordinator(create_local_backend(root), config=make_config(), clock=clock)
        assert reopened.read(KEY, WRITER).payload == b"v1"
        assert reopened.get_lock("prod/dns", WRITER).lock_id == held.lock_id
        assert reopened.release_lock(held.lock_id, WRITER) is True

    def test_ledger_cas_across_instances(self, root):
        a = create_local_backend(root)
        b = create_local_backend(root)
        a.index.save(LedgerRecord(key=KEY, current_serial=1), expected_serial=0)
        with pytest.raises(VersionConflict) as exc:
            b.index.save(LedgerRecord(key=KEY, current_serial=1), expected_serial=0)
        assert exc.value.current_serial == 1


class TestCorruption:
    def test_corrupt_ledger_file(self, local, root):
        local.with_session(KEY, WRITER, "apply", lambda _s: b"v1")
        (namespace_dir(root.resolve(), KEY) / LEDGER_FILE).write_text("{truncated")
        with pytest.raises(CorruptState):
            local.read(KEY, WRITER)

    def test_ledger_is_never_overwritten_when_corrupt(self, local, root):
        local.with_session(KEY, WRITER, "apply", lambda _s: b"v1")
        path = namespace_dir(root.resolve(), KEY) / LEDGER_FILE
        path.write_text("{truncated")
        with pytest.raises(CorruptState):
            local.with_session(KEY, WRITER, "apply", lambda _s: b"v2")
        assert path.read_text() == "{truncated"
        assert local.locks.get(KEY) is None

    def test_lock_slot_with_wrong_shape(self, local, root):
        local.acquire_lock(KEY, WRITER, "apply")
        (namespace_dir(root.resolve(), KEY) / LOCK_FILE).write_text(json.dumps({"holder": "x"}))
        with pytest.raises(CorruptState) as exc:
            local.get_lock(KEY, WRITER)
        assert exc.value.key == KEY

    def test_bad_lock_slot_does_not_mask_session_error(self, local, root):
        slot = namespace_dir(root.resolve(), KEY) / LOCK_FILE

        def fn(_state):
            slot.write_text(json.dumps({"holder": "x"}))
            raise RuntimeError("original")

        with pytest.raises(RuntimeError, match="original"):
            local.with_session(KEY, WRITER, "apply", fn)

    def test_tampered_blob_on_disk(self, local, root):
        local.with_session(KEY, WRITER, "apply", lambda _s: b"v1")
        content_id = fingerprint_of(b"v1")
        (namespace_dir(root.resolve(), KEY) / "blobs" / content_id[:2] / content_id).write_bytes(b"v2")
        with pytest.raises(CorruptState) as exc:
            local.read(KEY, WRITER)
        assert exc.value.serial == 1


class TestEncryptionHeader:
    def test_header_created_once(self, root):
        root.mkdir(parents=True)
        first = load_cipher(root, "correct horse battery", FAST_KDF)
        header = json.loads((root / ENCRYPTION_FILE).read_text())
        assert header["algorithm"] == "aes-256-gcm"
        assert header["iterations"] == FAST_KDF

        second = load_cipher(root, "correct horse battery", FAST_KDF)
        assert second.salt == first.salt

    def test_wrong_passphrase(self, root):
        root.mkdir(parents=True)
        load_cipher(root, "correct horse battery", FAST_KDF)
        with pytest.raises(PermissionDenied):
            load_cipher(root, "wrong passphrase!", FAST_KDF)

    def test_encrypted_store_end_to_end(self, root, clock):
        root.mkdir(parents=True)
        cipher = load_cipher(root, "correct horse battery", FAST_KDF)
        store = StateCoordinator(create_local_backend(root, cipher=cipher), config=make_config(), clock=clock)
        store.with_session(KEY, WRITER, "apply", lambda _s: b'{"secret": "db-password"}')

        blob_files = list((root / "states").rglob("blobs/*/*"))
        assert len(blob_files) == 1
        assert b"db-password" not in blob_files[0].read_bytes()
        assert store.read(KEY, WRITER).payload == b'{"secret": "db-password"}'
