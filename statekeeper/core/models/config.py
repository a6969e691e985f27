"""
Store configuration — loaded from statekeeper.yml.

Every section is optional; an empty file yields a working local store
with conservative defaults (fail immediately on a held lock, five
minute leases, keep the last ten versions for thirty days).
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class Role(StrEnum):
    """Access roles, weakest first."""

    READER = "reader"
    WRITER = "writer"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return list(Role).index(self)

    def allows(self, required: Role) -> bool:
        return self.rank >= required.rank


class EncryptionConfig(BaseModel):
    enabled: bool = False
    passphrase_env: str = "STATEKEEPER_PASSPHRASE"
    kdf_iterations: int = 480_000


class BackendConfig(BaseModel):
    """Where state lives."""

    type: Literal["local", "memory"] = "local"
    path: str = ".statekeeper"
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)


class LockingConfig(BaseModel):
    lease_seconds: float = 300.0
    wait_timeout: float = 0.0
    poll_interval: float = 0.25
    max_poll_interval: float = 5.0

    @field_validator("lease_seconds", "poll_interval", "max_poll_interval")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("wait_timeout")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def lease(self) -> timedelta:
        return timedelta(seconds=self.lease_seconds)


class RetentionPolicy(BaseModel):
    """Pruning rules.

    A version is removable only if it is not current, is older than
    ``min_age_days``, and is not among the ``keep_last`` newest.
    """

    min_age_days: float = 30.0
    keep_last: int = Field(default=10, ge=1)

    @field_validator("min_age_days")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def min_age(self) -> timedelta:
        return timedelta(days=self.min_age_days)


class StorageConfig(BaseModel):
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 0.05
    retry_max_delay: float = 2.0
    breaker_threshold: int = Field(default=5, ge=1)
    breaker_recovery_seconds: float = 30.0


class AccessConfig(BaseModel):
    default_role: Role = Role.WRITER
    principals: dict[str, Role] = Field(default_factory=dict)


class StoreConfig(BaseModel):
    """Root configuration model."""

    version: int = 1
    name: str = "statekeeper"
    backend: BackendConfig = Field(default_factory=BackendConfig)
    locking: LockingConfig = Field(default_factory=LockingConfig)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
