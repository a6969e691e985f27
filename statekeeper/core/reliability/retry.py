"""
Retry policy — bounded exponential backoff with jitter.

Only ``StorageUnavailable`` is retried, and only at the storage
boundary (blob store, ledger index, lock slot).  Contention and
conflicts are never retried here: that policy belongs to the caller.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from statekeeper.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how patiently to retry a transient failure."""

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 2.0
    jitter: float = 0.3        # fraction of the delay added at random

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    operation: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying ``StorageUnavailable`` per ``policy``.

    Raises:
        StorageUnavailable: The last failure once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except StorageUnavailable as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s", operation or "storage call", attempt, e
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s unavailable (attempt %d/%d), retrying in %.2fs: %s",
                operation or "storage call",
                attempt,
                policy.max_attempts,
                delay,
                e.message,
            )
            sleep(delay)
            attempt += 1
