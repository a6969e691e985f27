"""Storage adapters — backends for blobs, ledger records, and lock slots.

Public re-exports for convenient access.
"""

from statekeeper.adapters.base import BlobStore, LedgerIndex, LockBackend, StorageBackend
from statekeeper.adapters.local import create_local_backend
from statekeeper.adapters.memory import create_memory_backend
from statekeeper.adapters.registry import BackendConfigError, BackendRegistry, default_registry

__all__ = [
    "BackendConfigError",
    "BackendRegistry",
    "BlobStore",
    "LedgerIndex",
    "LockBackend",
    "StorageBackend",
    "create_local_backend",
    "create_memory_backend",
    "default_registry",
]
