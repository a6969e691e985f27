"""
Lock manager — per-key mutual exclusion with leases.

    from statekeeper.core.services.locks import LockManager

    lock = manager.acquire("prod/vpc", "alice@laptop", "apply", wait_timeout=0)
    ...
    manager.release(lock.lock_id)
"""

from statekeeper.core.services.locks.manager import LockManager

__all__ = ["LockManager"]
