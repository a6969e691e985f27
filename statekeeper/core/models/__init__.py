"""
Domain models — pydantic types for the state store.

    from statekeeper.core.models import Lock, StateVersion, StoreConfig
"""

from statekeeper.core.models.config import (
    AccessConfig,
    BackendConfig,
    EncryptionConfig,
    LockingConfig,
    RetentionPolicy,
    Role,
    StorageConfig,
    StoreConfig,
)
from statekeeper.core.models.keys import validate_key
from statekeeper.core.models.lock import Lock, LockOperation, new_lock_id, utc_now
from statekeeper.core.models.version import (
    HistoryPage,
    LedgerRecord,
    StateSnapshot,
    StateVersion,
    fingerprint_of,
)

__all__ = [
    # config.py
    "AccessConfig",
    "BackendConfig",
    "EncryptionConfig",
    "HistoryPage",
    "LedgerRecord",
    # lock.py
    "Lock",
    "LockOperation",
    "LockingConfig",
    "RetentionPolicy",
    "Role",
    "StateSnapshot",
    # version.py
    "StateVersion",
    "StorageConfig",
    "StoreConfig",
    "fingerprint_of",
    "new_lock_id",
    "utc_now",
    # keys.py
    "validate_key",
]
