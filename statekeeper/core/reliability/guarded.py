"""
Guarded storage calls — circuit breaker in front of bounded retry.

    guard = StorageGuard(breaker, policy)
    payload = guard.call("blob.get", lambda: blobs.get(content_id))
"""

from __future__ import annotations

from typing import Callable, TypeVar

from statekeeper.core.errors import StorageUnavailable
from statekeeper.core.reliability.circuit_breaker import CircuitBreaker
from statekeeper.core.reliability.retry import RetryPolicy, call_with_retry

T = TypeVar("T")


class StorageGuard:
    """Wraps storage calls with a circuit breaker and a retry policy.

    Only ``StorageUnavailable`` counts as a breaker failure; domain
    errors (not found, corrupt) pass straight through.
    """

    def __init__(self, breaker: CircuitBreaker, policy: RetryPolicy):
        self.breaker = breaker
        self.policy = policy

    def call(self, operation: str, fn: Callable[[], T], key: str = "") -> T:
        def attempt() -> T:
            if not self.breaker.allow_request():
                raise StorageUnavailable(
                    f"Circuit '{self.breaker.name}' is open; storage calls suspended",
                    key=key,
                    next_action=(
                        f"Wait {self.breaker.recovery_timeout:.0f}s for the backend to "
                        "recover, then retry."
                    ),
                )
            try:
                result = fn()
            except StorageUnavailable:
                self.breaker.record_failure()
                raise
            self.breaker.record_success()
            return result

        return call_with_retry(attempt, self.policy, operation)
