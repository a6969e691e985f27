"""
Tests for the HTTP API — app factory, lock and state routes, errors.
"""

from __future__ import annotations

import base64
from pathlib import Path

import pytest
from flask.testing import FlaskClient

from conftest import ADMIN, READER, WRITER
from statekeeper.ui.web.helpers import PRINCIPAL_HEADER
from statekeeper.ui.web.server import create_app

KEY = "prod/vpc"


def _as(principal: str) -> dict[str, str]:
    return {PRINCIPAL_HEADER: principal}


def _b64(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


@pytest.fixture()
def app(coordinator):
    app = create_app(coordinator=coordinator)
    app.config["TESTING"] = True
    return app


@pytest.fixture()
def client(app) -> FlaskClient:
    return app.test_client()


def _acquire(client: FlaskClient, principal: str = WRITER, **body) -> str:
    resp = client.post("/api/locks", json={"key": KEY, "operation": "apply", **body}, headers=_as(principal))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["lock_id"]


def _commit(client: FlaskClient, lock_id: str, base_serial: int, payload: bytes, principal: str = WRITER):
    return client.post(
        f"/api/state/{KEY}",
        json={"lock_id": lock_id, "base_serial": base_serial, "payload": _b64(payload)},
        headers=_as(principal),
    )


class TestAppFactory:
    def test_from_config_file(self, store_dir: Path):
        app = create_app(config_path=store_dir / "statekeeper.yml")
        assert app.config["COORDINATOR"].config.name == "local-test"

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "healthy"

    def test_unhealthy_is_503(self, client, backend):
        backend.index.faults.fail_next(100)
        assert client.get("/api/health").status_code == 503


class TestLockRoutes:
    def test_acquire_and_release(self, client):
        lock_id = _acquire(client)
        resp = client.delete(f"/api/locks/{lock_id}", headers=_as(WRITER))
        assert resp.get_json() == {"lock_id": lock_id, "status": "ok"}

        again = client.delete(f"/api/locks/{lock_id}", headers=_as(WRITER))
        assert again.status_code == 200
        assert again.get_json()["status"] == "NotHeld"

    def test_held_lock_is_423_with_holder(self, client):
        lock_id = _acquire(client, principal="other-bot")
        resp = client.post("/api/locks", json={"key": KEY}, headers=_as(WRITER))
        assert resp.status_code == 423
        data = resp.get_json()
        assert data["error"] == "LockDenied"
        assert data["current_holder"] == "other-bot"
        assert data["lock_id"] == lock_id
        assert data["next_action"]

    def test_only_holder_may_release(self, client):
        lock_id = _acquire(client)
        resp = client.delete(f"/api/locks/{lock_id}", headers=_as("intruder-bot"))
        assert resp.status_code == 423
        data = resp.get_json()
        assert data["error"] == "LockDenied"
        assert data["current_holder"] == WRITER

        held = client.get(f"/api/locks?key={KEY}", headers=_as(READER)).get_json()["locks"]
        assert held[0]["lock_id"] == lock_id

    def test_only_holder_may_renew(self, client):
        lock_id = _acquire(client)
        resp = client.post(f"/api/locks/{lock_id}/renew", json={}, headers=_as("intruder-bot"))
        assert resp.status_code == 423

    def test_renew(self, client):
        lock_id = _acquire(client, lease_duration=5)
        resp = client.post(f"/api/locks/{lock_id}/renew", json={"lease_duration": 600}, headers=_as(WRITER))
        assert resp.status_code == 200
        assert resp.get_json()["lock_id"] == lock_id

    def test_renew_expired_lease(self, client, clock):
        lock_id = _acquire(client, lease_duration=5)
        clock.advance(10)
        resp = client.post(f"/api/locks/{lock_id}/renew", json={}, headers=_as(WRITER))
        assert resp.status_code == 423

    def test_list_with_stale_flag(self, client, clock):
        _acquire(client, lease_duration=5)
        clock.advance(10)
        resp = client.get("/api/locks?stale=1", headers=_as(READER))
        locks = resp.get_json()["locks"]
        assert len(locks) == 1
        assert locks[0]["stale"] is True
        assert locks[0]["key"] == KEY

        single = client.get(f"/api/locks?key={KEY}", headers=_as(READER))
        assert single.get_json()["locks"][0]["holder"] == WRITER

    def test_force_unlock(self, client):
        lock_id = _acquire(client, principal="crashed-ci")
        body = {"key": KEY, "lock_id": lock_id, "reason": "CI runner died"}

        denied = client.post("/api/locks/force-unlock", json=body, headers=_as(WRITER))
        assert denied.status_code == 403
        assert denied.get_json()["error"] == "PermissionDenied"

        resp = client.post("/api/locks/force-unlock", json=body, headers=_as(ADMIN))
        assert resp.status_code == 200
        assert resp.get_json()["cleared"]["holder"] == "crashed-ci"

    def test_force_unlock_needs_reason(self, client):
        lock_id = _acquire(client)
        resp = client.post(
            "/api/locks/force-unlock", json={"key": KEY, "lock_id": lock_id}, headers=_as(ADMIN)
        )
        assert resp.status_code == 400

    def test_missing_principal_header(self, client):
        resp = client.post("/api/locks", json={"key": KEY})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "BadRequest"

    def test_invalid_key(self, client):
        resp = client.post("/api/locks", json={"key": "../etc"}, headers=_as(WRITER))
        assert resp.status_code == 400


class TestStateRoutes:
    def test_commit_and_read(self, client):
        lock_id = _acquire(client)
        resp = _commit(client, lock_id, 0, b'{"serial": 1}')
        assert resp.status_code == 201
        assert resp.get_json()["new_serial"] == 1

        got = client.get(f"/api/state/{KEY}", headers=_as(READER))
        data = got.get_json()
        assert data["serial"] == 1
        assert base64.b64decode(data["payload"]) == b'{"serial": 1}'
        assert data["version"]["created_by"] == WRITER

    def test_stale_base_is_409(self, client):
        lock_id = _acquire(client)
        _commit(client, lock_id, 0, b"v1")
        _commit(client, lock_id, 1, b"v2")
        resp = _commit(client, lock_id, 1, b"v3")
        assert resp.status_code == 409
        data = resp.get_json()
        assert data["error"] == "ConcurrentModification"
        assert data["current_serial"] == 2

    def test_commit_without_lock(self, client):
        resp = _commit(client, "not-a-lock", 0, b"v1")
        assert resp.status_code == 409

    def test_commit_through_someone_elses_lock(self, client):
        lock_id = _acquire(client)
        resp = _commit(client, lock_id, 0, b"hijacked", principal="intruder-bot")
        assert resp.status_code == 423
        assert client.get(f"/api/state/{KEY}", headers=_as(READER)).status_code == 404

    def test_bad_payload(self, client):
        lock_id = _acquire(client)
        resp = client.post(
            f"/api/state/{KEY}",
            json={"lock_id": lock_id, "base_serial": 0, "payload": "%%% not base64"},
            headers=_as(WRITER),
        )
        assert resp.status_code == 400

    def test_read_missing_is_404(self, client):
        resp = client.get("/api/state/never/written", headers=_as(READER))
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "NotFound"

    def test_read_specific_serial(self, client):
        lock_id = _acquire(client)
        _commit(client, lock_id, 0, b"v1")
        _commit(client, lock_id, 1, b"v2")
        data = client.get(f"/api/state/{KEY}?serial=1", headers=_as(READER)).get_json()
        assert base64.b64decode(data["payload"]) == b"v1"

    def test_history_paging(self, client):
        lock_id = _acquire(client)
        for serial in range(3):
            _commit(client, lock_id, serial, f"v{serial + 1}".encode())

        first = client.get(f"/api/history/{KEY}?limit=2", headers=_as(READER)).get_json()
        assert [v["serial"] for v in first["versions"]] == [3, 2]
        token = first["next_page_token"]
        rest = client.get(f"/api/history/{KEY}?limit=2&page_token={token}", headers=_as(READER)).get_json()
        assert [v["serial"] for v in rest["versions"]] == [1]

        oldest = client.get(f"/api/history/{KEY}?order=oldest", headers=_as(READER)).get_json()
        assert [v["serial"] for v in oldest["versions"]] == [1, 2, 3]

        bad = client.get(f"/api/history/{KEY}?order=sideways", headers=_as(READER))
        assert bad.status_code == 400

    def test_restore(self, client):
        lock_id = _acquire(client)
        for serial in range(3):
            _commit(client, lock_id, serial, f"v{serial + 1}".encode())
        client.delete(f"/api/locks/{lock_id}", headers=_as(WRITER))

        resp = client.post(
            "/api/restore",
            json={"key": KEY, "target_serial": 1, "reason": "bad apply"},
            headers=_as(ADMIN),
        )
        assert resp.status_code == 201
        assert resp.get_json()["new_serial"] == 4
        assert resp.get_json()["version"]["restored_from"] == 1

    def test_reader_cannot_commit(self, client):
        lock_id = _acquire(client)
        resp = _commit(client, lock_id, 0, b"v1", principal=READER)
        assert resp.status_code == 403


class TestAuditAndMetrics:
    def test_audit_records(self, client):
        lock_id = _acquire(client)
        _commit(client, lock_id, 0, b"v1")
        resp = client.get(f"/api/audit?key={KEY}&action=Write", headers=_as(READER))
        records = resp.get_json()["records"]
        assert len(records) == 1
        assert records[0]["serial"] == 1

    def test_unknown_audit_action(self, client):
        resp = client.get("/api/audit?action=Explode", headers=_as(READER))
        assert resp.status_code == 400

    def test_metrics(self, client):
        _acquire(client)
        counters = {c["name"]: c["value"] for c in client.get("/api/metrics").get_json()["counters"]}
        assert counters["locks.acquired"] == 1
