"""
Tests for reliability — circuit breaker, retry policy, guarded calls.
"""

import time

import pytest

from statekeeper.core.errors import CorruptState, LockDenied, StorageUnavailable
from statekeeper.core.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from statekeeper.core.reliability.guarded import StorageGuard
from statekeeper.core.reliability.retry import NO_RETRY, RetryPolicy, call_with_retry


class _Flaky:
    """Fails the first ``failures`` calls with ``exc``, then returns ``value``."""

    def __init__(self, failures: int, exc: Exception | None = None, value: str = "ok"):
        self.failures = failures
        self.exc = exc or StorageUnavailable("backend down")
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


# ── Circuit Breaker State Machine ────────────────────────────────────


class TestCircuitBreaker:
    def test_initial_state_closed(self):
        cb = CircuitBreaker(name="local:blobs")
        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request()

    def test_transitions_to_open_after_threshold(self):
        cb = CircuitBreaker(name="local:blobs", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_open_rejects_requests(self):
        cb = CircuitBreaker(name="local:blobs", failure_threshold=1)
        cb.record_failure()
        assert not cb.allow_request()
        assert cb.total_rejections == 1

    def test_half_open_probe(self):
        cb = CircuitBreaker(name="local:locks", failure_threshold=1, recovery_timeout=0.01)
        cb.record_failure()
        time.sleep(0.02)
        assert cb.allow_request()
        assert cb.state == CircuitState.HALF_OPEN

        cb.record_success()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens(self):
        cb = CircuitBreaker(name="local:locks", failure_threshold=1, recovery_timeout=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.allow_request()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker(name="local:ledger", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        assert cb.failure_count == 0

    def test_reset_and_to_dict(self):
        cb = CircuitBreaker(name="local:ledger", failure_threshold=1)
        cb.record_failure()
        assert cb.to_dict()["state"] == "open"
        cb.reset()
        d = cb.to_dict()
        assert d["name"] == "local:ledger"
        assert d["state"] == "closed"
        assert d["failure_count"] == 0


class TestCircuitBreakerRegistry:
    def test_get_or_create(self):
        reg = CircuitBreakerRegistry()
        assert reg.get_or_create("local:blobs") is reg.get_or_create("local:blobs")
        assert reg.get_or_create("local:blobs") is not reg.get_or_create("local:locks")

    def test_uses_defaults(self):
        reg = CircuitBreakerRegistry(default_threshold=10, default_timeout=60.0)
        cb = reg.get_or_create("local:blobs")
        assert cb.failure_threshold == 10
        assert cb.recovery_timeout == 60.0

    def test_status_and_reset_all(self):
        reg = CircuitBreakerRegistry(default_threshold=1)
        reg.get_or_create("local:blobs").record_failure()
        reg.get_or_create("local:locks")
        status = reg.get_status()
        assert status["local:blobs"]["state"] == "open"
        assert status["local:locks"]["state"] == "closed"
        reg.reset_all()
        assert reg.get_or_create("local:blobs").state == CircuitState.CLOSED


# ── Retry ───────────────────────────────────────────────────────────


class TestRetryPolicy:
    def test_backoff_grows_and_caps(self):
        policy = RetryPolicy(base_delay=0.1, max_delay=0.3, jitter=0)
        assert policy.delay_for(1) == pytest.approx(0.1)
        assert policy.delay_for(2) == pytest.approx(0.2)
        assert policy.delay_for(3) == pytest.approx(0.3)
        assert policy.delay_for(8) == pytest.approx(0.3)

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_retries_transient_failures(self):
        sleeps: list[float] = []
        fn = _Flaky(failures=2)
        result = call_with_retry(fn, RetryPolicy(max_attempts=3, jitter=0), "blob.get", sleep=sleeps.append)
        assert result == "ok"
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_attempts(self):
        fn = _Flaky(failures=5)
        with pytest.raises(StorageUnavailable):
            call_with_retry(fn, RetryPolicy(max_attempts=3), sleep=lambda _s: None)
        assert fn.calls == 3

    def test_contention_is_not_retried(self):
        fn = _Flaky(failures=1, exc=LockDenied("held"))
        with pytest.raises(LockDenied):
            call_with_retry(fn, RetryPolicy(max_attempts=5), sleep=lambda _s: None)
        assert fn.calls == 1

    def test_no_retry_policy(self):
        fn = _Flaky(failures=1)
        with pytest.raises(StorageUnavailable):
            call_with_retry(fn, NO_RETRY, sleep=lambda _s: None)
        assert fn.calls == 1


# ── Guard ───────────────────────────────────────────────────────────


class TestStorageGuard:
    def _guard(self, threshold: int = 5, attempts: int = 3) -> StorageGuard:
        breaker = CircuitBreaker(name="memory:blobs", failure_threshold=threshold, recovery_timeout=60)
        return StorageGuard(breaker, RetryPolicy(max_attempts=attempts, base_delay=0.001, jitter=0))

    def test_success_passes_through(self):
        guard = self._guard()
        assert guard.call("blob.get", lambda: "payload") == "payload"

    def test_failures_open_the_breaker(self):
        guard = self._guard(threshold=2, attempts=1)
        for _ in range(2):
            with pytest.raises(StorageUnavailable):
                guard.call("blob.get", _Flaky(failures=10))
        assert guard.breaker.state == CircuitState.OPEN

        fn = _Flaky(failures=0)
        with pytest.raises(StorageUnavailable, match="open"):
            guard.call("blob.get", fn, key="prod/vpc")
        assert fn.calls == 0

    def test_domain_errors_do_not_trip_the_breaker(self):
        guard = self._guard(threshold=1)
        with pytest.raises(CorruptState):
            guard.call("blob.get", _Flaky(failures=1, exc=CorruptState("bad bytes")))
        assert guard.breaker.state == CircuitState.CLOSED

    def test_retry_recovers_within_threshold(self):
        guard = self._guard(threshold=5, attempts=3)
        assert guard.call("ledger.load", _Flaky(failures=2)) == "ok"
        assert guard.breaker.failure_count == 0
