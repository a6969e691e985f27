"""
Tests for domain models — keys, locks, versions, config, errors.
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from statekeeper.core.errors import (
    ConcurrentModification,
    CorruptState,
    LockDenied,
    LockLost,
    LockTimeout,
    ResultCode,
    VersionConflict,
)
from statekeeper.core.models import (
    LedgerRecord,
    Lock,
    LockingConfig,
    LockOperation,
    RetentionPolicy,
    Role,
    StateVersion,
    StoreConfig,
    fingerprint_of,
    validate_key,
)
from statekeeper.core.models.keys import key_parts

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _lock(**kw) -> Lock:
    defaults = dict(
        key="prod/vpc",
        holder="alice",
        operation=LockOperation.APPLY,
        acquired_at=T0,
        lease_expires_at=T0 + timedelta(seconds=300),
    )
    defaults.update(kw)
    return Lock(**defaults)


def _version(serial: int, payload: bytes = b"x") -> StateVersion:
    fp = fingerprint_of(payload + str(serial).encode())
    return StateVersion(key="prod/vpc", serial=serial, fingerprint=fp, content_id=fp, created_at=T0)


# ── Keys ────────────────────────────────────────────────────────────


class TestStateKeys:
    @pytest.mark.parametrize("key", ["prod/vpc", "team-a/staging/network", "single", "a.b_c-d/e"])
    def test_valid_keys(self, key):
        assert validate_key(key) == key

    def test_strips_slashes_and_whitespace(self):
        assert validate_key("  /prod/vpc/ ") == "prod/vpc"

    @pytest.mark.parametrize(
        "key",
        ["", "/", "prod//vpc", "../etc", "prod/..", "prod/.hidden", "prod\\vpc", "prod/v pc"],
    )
    def test_invalid_keys(self, key):
        with pytest.raises(ValueError):
            validate_key(key)

    def test_too_deep(self):
        with pytest.raises(ValueError, match="deeper"):
            validate_key("/".join(["a"] * 9))

    def test_too_long(self):
        with pytest.raises(ValueError, match="longer"):
            validate_key("a" * 257)

    def test_non_string(self):
        with pytest.raises(ValueError):
            validate_key(42)  # type: ignore[arg-type]

    def test_key_parts(self):
        assert key_parts("prod/eu/vpc") == ["prod", "eu", "vpc"]


# ── Lock ────────────────────────────────────────────────────────────


class TestLock:
    def test_lock_ids_are_unique(self):
        assert _lock().lock_id != _lock().lock_id

    def test_stale_only_after_expiry(self):
        lock = _lock()
        assert not lock.is_stale(T0 + timedelta(seconds=299))
        assert not lock.is_stale(T0 + timedelta(seconds=300))
        assert lock.is_stale(T0 + timedelta(seconds=301))

    def test_renewed_extends_from_now(self):
        lock = _lock()
        renewed = lock.renewed(timedelta(seconds=60), T0 + timedelta(seconds=250))
        assert renewed.lease_expires_at == T0 + timedelta(seconds=310)
        assert renewed.lock_id == lock.lock_id
        assert lock.lease_expires_at == T0 + timedelta(seconds=300)

    def test_frozen(self):
        with pytest.raises(ValidationError):
            _lock().holder = "mallory"  # type: ignore[misc]

    def test_describe_names_holder_and_operation(self):
        text = _lock().describe()
        assert "alice" in text
        assert "apply" in text

    def test_json_round_trip(self):
        lock = _lock(info="terraform apply #42")
        assert Lock.model_validate_json(lock.model_dump_json()) == lock


# ── Ledger record ───────────────────────────────────────────────────


class TestLedgerRecord:
    def test_empty_record_has_no_current(self):
        record = LedgerRecord(key="prod/vpc")
        assert record.current is None
        assert record.current_serial == 0

    def test_current_and_get(self):
        record = LedgerRecord(key="prod/vpc", current_serial=2, versions=[_version(1), _version(2)])
        assert record.current.serial == 2
        assert record.get(1).serial == 1
        assert record.get(5) is None

    def test_referenced_content(self):
        record = LedgerRecord(key="prod/vpc", current_serial=2, versions=[_version(1), _version(2)])
        assert record.referenced_content() == {v.content_id for v in record.versions}

    def test_fingerprint_is_sha256(self):
        assert fingerprint_of(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


# ── Config ──────────────────────────────────────────────────────────


class TestConfigModels:
    def test_defaults(self):
        config = StoreConfig()
        assert config.backend.type == "local"
        assert config.locking.lease_seconds == 300
        assert config.locking.wait_timeout == 0
        assert config.retention.keep_last == 10
        assert config.access.default_role == Role.WRITER

    def test_rejects_bad_lease(self):
        with pytest.raises(ValidationError):
            LockingConfig(lease_seconds=0)

    def test_rejects_negative_wait(self):
        with pytest.raises(ValidationError):
            LockingConfig(wait_timeout=-1)

    def test_keep_last_at_least_one(self):
        with pytest.raises(ValidationError):
            RetentionPolicy(keep_last=0)

    def test_unknown_backend_type(self):
        with pytest.raises(ValidationError):
            StoreConfig.model_validate({"backend": {"type": "s3"}})

    def test_role_ordering(self):
        assert Role.ADMIN.allows(Role.WRITER)
        assert Role.WRITER.allows(Role.READER)
        assert not Role.READER.allows(Role.WRITER)
        assert not Role.WRITER.allows(Role.ADMIN)


# ── Errors ──────────────────────────────────────────────────────────


class TestErrors:
    def test_lock_denied_carries_holder(self):
        current = _lock()
        err = LockDenied("held", key="prod/vpc", current=current)
        data = err.to_dict()
        assert data["error"] == "LockDenied"
        assert data["current_holder"] == "alice"
        assert data["current_operation"] == "apply"
        assert data["lock_id"] == current.lock_id
        assert data["next_action"]

    def test_lock_timeout_is_a_lock_denied(self):
        err = LockTimeout("timed out", key="k")
        assert isinstance(err, LockDenied)
        assert err.code == ResultCode.LOCK_TIMEOUT

    def test_conflict_family(self):
        assert issubclass(VersionConflict, ConcurrentModification)
        assert issubclass(LockLost, ConcurrentModification)
        err = VersionConflict("stale", key="k", current_serial=2)
        assert err.current_serial == 2
        assert err.to_dict()["current_serial"] == 2

    def test_corrupt_suggests_prior_serial(self):
        err = CorruptState("bad", key="prod/vpc", serial=5, expected="aa", actual="bb")
        assert "prod/vpc 4" in err.next_action
        assert err.to_dict()["expected_fingerprint"] == "aa"

    def test_str_includes_code_and_key(self):
        assert str(LockDenied("held", key="prod/vpc")) == "LockDenied [prod/vpc]: held"

    @pytest.mark.parametrize(
        "code,exit_code,status",
        [
            (ResultCode.OK, 0, 200),
            (ResultCode.LOCK_TIMEOUT, 3, 423),
            (ResultCode.LOCK_DENIED, 4, 423),
            (ResultCode.CONCURRENT_MODIFICATION, 5, 409),
            (ResultCode.NOT_FOUND, 6, 404),
            (ResultCode.STORAGE_UNAVAILABLE, 7, 503),
            (ResultCode.CORRUPT, 8, 500),
            (ResultCode.PERMISSION_DENIED, 9, 403),
        ],
    )
    def test_result_code_mapping(self, code, exit_code, status):
        assert code.exit_code == exit_code
        assert code.http_status == status
