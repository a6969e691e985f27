"""
Tests for observability — health checks, metrics, logging setup.
"""

import logging

from conftest import WRITER
from statekeeper.core.observability.health import (
    ComponentHealth,
    SystemHealth,
    check_circuit_breakers,
    check_stale_locks,
    check_storage,
    check_system_health,
)
from statekeeper.core.observability.logging_config import (
    ENV_LOG_LEVEL,
    SessionContextFilter,
    resolve_level,
    session_context,
    setup_logging,
)
from statekeeper.core.observability.metrics import Counter, Gauge, Histogram, MetricsRegistry
from statekeeper.core.reliability.circuit_breaker import CircuitBreakerRegistry

# ── Health Check Tests ───────────────────────────────────────────────


class TestSystemHealth:
    def test_component_defaults(self):
        assert ComponentHealth(name="storage").status == "unknown"

    def test_all_healthy(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        h.add(ComponentHealth(name="b", status="healthy"))
        assert h.status == "healthy"
        assert h.healthy

    def test_degraded_if_any_degraded(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        h.add(ComponentHealth(name="b", status="degraded"))
        assert h.status == "degraded"
        assert not h.healthy

    def test_unhealthy_wins(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="degraded"))
        h.add(ComponentHealth(name="b", status="unhealthy"))
        assert h.status == "unhealthy"

    def test_to_dict(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy", message="ok"))
        d = h.to_dict()
        assert d["status"] == "healthy"
        assert d["timestamp"]
        assert d["components"][0]["message"] == "ok"


class TestCircuitBreakerHealth:
    def test_no_breakers(self):
        assert check_circuit_breakers(CircuitBreakerRegistry()).status == "healthy"

    def test_all_closed(self):
        reg = CircuitBreakerRegistry()
        reg.get_or_create("memory:blobs")
        assert check_circuit_breakers(reg).status == "healthy"

    def test_open_is_unhealthy(self):
        reg = CircuitBreakerRegistry(default_threshold=1)
        reg.get_or_create("memory:blobs").record_failure()
        reg.get_or_create("memory:locks")
        result = check_circuit_breakers(reg)
        assert result.status == "unhealthy"
        assert "1/2" in result.message
        assert "memory:blobs" in result.details


class TestStoreHealth:
    def test_fresh_store_is_healthy(self, coordinator):
        health = check_system_health(coordinator)
        assert health.status == "healthy"
        assert [c.name for c in health.components] == ["storage", "locks", "circuit_breakers"]

    def test_storage_counts_keys(self, coordinator):
        coordinator.with_session("prod/vpc", WRITER, "apply", lambda _s: b"v1")
        result = check_storage(coordinator)
        assert result.status == "healthy"
        assert result.message == "1 state key(s)"
        assert result.details["name"] == "memory"

    def test_unreachable_storage(self, coordinator, backend):
        backend.index.faults.fail_next(100)
        result = check_storage(coordinator)
        assert result.status == "unhealthy"
        assert "unavailable" in result.message

    def test_stale_lock_degrades(self, coordinator, clock):
        coordinator.acquire_lock("prod/vpc", WRITER, "apply", lease_duration=5)
        assert check_stale_locks(coordinator).status == "healthy"
        clock.advance(10)
        result = check_stale_locks(coordinator)
        assert result.status == "degraded"
        assert "prod/vpc" in result.details
        assert check_system_health(coordinator).status == "degraded"


# ── Metrics Tests ────────────────────────────────────────────────────


class TestMetricTypes:
    def test_counter(self):
        c = Counter(name="locks.acquired")
        c.inc()
        c.inc(5)
        assert c.value == 6
        assert c.to_dict()["type"] == "counter"

    def test_gauge(self):
        g = Gauge(name="locks.held")
        g.set(3)
        assert g.to_dict()["value"] == 3

    def test_histogram(self):
        h = Histogram(name="locks.wait_ms")
        for v in (10, 20, 30, 40):
            h.observe(v)
        d = h.to_dict()
        assert d["count"] == 4
        assert d["mean"] == 25.0
        assert d["min"] == 10
        assert d["max"] == 40

    def test_empty_histogram(self):
        d = Histogram(name="x").to_dict()
        assert d["count"] == 0
        assert d["p95"] == 0.0


class TestMetricsRegistry:
    def test_counters_with_labels(self):
        reg = MetricsRegistry()
        reg.inc("locks.denied", key="prod/vpc")
        reg.inc("locks.denied", key="prod/vpc")
        reg.inc("locks.denied", key="prod/dns")
        assert reg.counter_value("locks.denied", key="prod/vpc") == 2
        assert reg.counter_value("locks.denied", key="prod/dns") == 1
        assert reg.counter_value("locks.denied") == 0

    def test_timer_records_histogram(self):
        reg = MetricsRegistry()
        with reg.timer("commit_ms"):
            pass
        histograms = reg.to_dict()["histograms"]
        assert histograms[0]["name"] == "commit_ms"
        assert histograms[0]["count"] == 1

    def test_reset(self):
        reg = MetricsRegistry()
        reg.inc("ledger.commits")
        reg.set_gauge("locks.held", 1)
        reg.reset()
        assert reg.to_dict() == {"counters": [], "gauges": [], "histograms": []}

    def test_coordinator_records_lock_metrics(self, coordinator):
        coordinator.with_session("prod/vpc", WRITER, "apply", lambda _s: b"v1")
        m = coordinator.metrics
        assert m.counter_value("locks.acquired") == 1
        assert m.counter_value("ledger.commits") == 1
        assert m.counter_value("sessions.committed") == 1
        waits = [h for h in m.to_dict()["histograms"] if h["name"] == "locks.wait_ms"]
        assert waits[0]["count"] == 1
        durations = [h for h in m.to_dict()["histograms"] if h["name"] == "sessions.duration_ms"]
        assert durations[0]["count"] == 1


# ── Logging ──────────────────────────────────────────────────────────


class TestLoggingSetup:
    def test_levels(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        setup_logging(level="bogus")
        assert logging.getLogger().level == logging.WARNING

    def test_third_party_quieted(self):
        setup_logging(level="INFO")
        assert logging.getLogger("werkzeug").level == logging.WARNING

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "statekeeper.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        logging.getLogger("statekeeper.test").debug("lock acquired on prod/vpc")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "lock acquired on prod/vpc" in log_file.read_text()
        assert logging.getLogger().level == logging.DEBUG
        setup_logging(level="WARNING")

    def test_resolve_level(self, monkeypatch):
        monkeypatch.setenv(ENV_LOG_LEVEL, "INFO")
        assert resolve_level() == "INFO"
        assert resolve_level(debug=True, quiet=True) == "DEBUG"
        assert resolve_level(verbose=True) == "INFO"
        assert resolve_level(quiet=True) == "ERROR"
        monkeypatch.delenv(ENV_LOG_LEVEL)
        assert resolve_level() == "WARNING"


class TestSessionContext:
    def _record(self) -> logging.LogRecord:
        return logging.LogRecord("statekeeper.test", logging.WARNING, __file__, 1, "msg", None, None)

    def test_outside_a_session(self):
        record = self._record()
        SessionContextFilter().filter(record)
        assert record.session == ""
        assert record.state_key == ""

    def test_inside_a_session(self):
        with session_context("prod/vpc", "3f9c2a1e55aa"):
            record = self._record()
            SessionContextFilter().filter(record)
        assert record.state_key == "prod/vpc"
        assert record.lock_id == "3f9c2a1e55aa"
        assert record.session == "[prod/vpc 3f9c2a1e] "

        after = self._record()
        SessionContextFilter().filter(after)
        assert after.session == ""

    def test_session_logs_carry_key_and_lock(self, coordinator, tmp_path):
        log_file = tmp_path / "statekeeper.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="INFO")

        def fn(_state):
            logging.getLogger("statekeeper.test").warning("planning changes")
            return b"v1"

        try:
            result = coordinator.with_session("prod/vpc", WRITER, "apply", fn)
            for handler in logging.getLogger().handlers:
                handler.flush()
            lines = [ln for ln in log_file.read_text().splitlines() if "planning changes" in ln]
            assert f"[prod/vpc {result.lock_id[:8]}] planning changes" in lines[0]
        finally:
            setup_logging(level="WARNING")
