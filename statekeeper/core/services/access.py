"""
Access policy — who may read, write, and administer state.

Roles are ordered ``reader < writer < admin``:

    reader  read current state and history, inspect locks
    writer  lock keys, commit new versions
    admin   force-unlock, restore, prune, migrate

Principals not listed in the configuration get ``default_role``.
Denials are written to the audit log before ``PermissionDenied`` is
raised.
"""

from __future__ import annotations

import getpass
import logging
import os
import socket

from statekeeper.core.errors import PermissionDenied
from statekeeper.core.models.config import AccessConfig, Role
from statekeeper.core.persistence.audit import AuditAction, AuditLog, AuditOutcome, AuditRecord

logger = logging.getLogger(__name__)

ENV_PRINCIPAL = "STATEKEEPER_PRINCIPAL"


def default_principal() -> str:
    """Caller identity: $STATEKEEPER_PRINCIPAL, else ``user@host``."""
    explicit = os.environ.get(ENV_PRINCIPAL, "").strip()
    if explicit:
        return explicit
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class AccessPolicy:
    def __init__(self, config: AccessConfig | None = None, audit: AuditLog | None = None):
        self._config = config or AccessConfig()
        self._audit = audit

    def role_of(self, principal: str) -> Role:
        return self._config.principals.get(principal, self._config.default_role)

    def allows(self, principal: str, required: Role) -> bool:
        return self.role_of(principal).allows(required)

    def require(
        self,
        principal: str,
        required: Role,
        action: AuditAction,
        key: str = "",
        lock_id: str | None = None,
    ) -> None:
        """Raise ``PermissionDenied`` unless ``principal`` has ``required``."""
        role = self.role_of(principal)
        if role.allows(required):
            return

        logger.warning(
            "Permission denied: %s (role %s) attempted %s on %s (requires %s)",
            principal, role.value, action.value, key or "-", required.value,
        )
        if self._audit is not None:
            self._audit.write(
                AuditRecord(
                    key=key,
                    lock_id=lock_id,
                    principal=principal,
                    action=action,
                    outcome=AuditOutcome.DENIED,
                    detail=f"role {role.value} lacks {required.value}",
                )
            )
        raise PermissionDenied(
            f"{principal} has role '{role.value}'; {action.value} requires '{required.value}'",
            key=key,
        )
