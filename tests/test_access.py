"""
Tests for the access policy.
"""

import pytest

from statekeeper.core.errors import PermissionDenied
from statekeeper.core.models.config import AccessConfig, Role
from statekeeper.core.persistence.audit import AuditAction, AuditLog, AuditOutcome
from statekeeper.core.services.access import ENV_PRINCIPAL, AccessPolicy, default_principal


@pytest.fixture
def policy() -> AccessPolicy:
    return AccessPolicy(
        AccessConfig(
            default_role=Role.READER,
            principals={"alice": Role.ADMIN, "ci-bot": Role.WRITER},
        ),
        AuditLog(),
    )


class TestRoles:
    def test_configured_and_default_roles(self, policy):
        assert policy.role_of("alice") == Role.ADMIN
        assert policy.role_of("ci-bot") == Role.WRITER
        assert policy.role_of("stranger") == Role.READER

    @pytest.mark.parametrize(
        "principal, required, allowed",
        [
            ("alice", Role.ADMIN, True),
            ("alice", Role.READER, True),
            ("ci-bot", Role.WRITER, True),
            ("ci-bot", Role.ADMIN, False),
            ("stranger", Role.READER, True),
            ("stranger", Role.WRITER, False),
        ],
    )
    def test_allows(self, policy, principal, required, allowed):
        assert policy.allows(principal, required) is allowed


class TestRequire:
    def test_allowed_writes_nothing(self, policy):
        policy.require("alice", Role.ADMIN, AuditAction.LOCK_FORCE_RELEASE, "prod/vpc")
        assert policy._audit.read_all() == []

    def test_denial_is_audited(self, policy):
        with pytest.raises(PermissionDenied) as exc:
            policy.require("ci-bot", Role.ADMIN, AuditAction.LOCK_FORCE_RELEASE, "prod/vpc", "lock-1")
        assert exc.value.key == "prod/vpc"

        record = policy._audit.read_all()[-1]
        assert record.outcome == AuditOutcome.DENIED
        assert record.principal == "ci-bot"
        assert record.lock_id == "lock-1"
        assert "writer" in record.detail

    def test_without_audit_log(self):
        policy = AccessPolicy(AccessConfig(default_role=Role.READER))
        with pytest.raises(PermissionDenied):
            policy.require("anyone", Role.WRITER, AuditAction.WRITE)


class TestDefaultPrincipal:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv(ENV_PRINCIPAL, "  deploy-bot ")
        assert default_principal() == "deploy-bot"

    def test_user_at_host(self, monkeypatch):
        monkeypatch.delenv(ENV_PRINCIPAL, raising=False)
        assert "@" in default_principal()
