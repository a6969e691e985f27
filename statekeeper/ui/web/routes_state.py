"""
State API routes — read, commit, history, restore, plus audit,
health and metrics.

Payloads travel as base64 strings inside JSON.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from statekeeper.core.models.config import Role
from statekeeper.core.observability.health import check_system_health
from statekeeper.core.persistence.audit import AuditAction

from .helpers import (
    coordinator,
    decode_payload,
    encode_payload,
    int_field,
    json_body,
    principal,
    require_field,
)

logger = logging.getLogger(__name__)

state_bp = Blueprint("state", __name__)


# ── State ───────────────────────────────────────────────────────────


@state_bp.route("/state/<path:key>")
def get_state(key: str):  # type: ignore[no-untyped-def]
    """Current version of ``key`` (or ``?serial=N``). Unlocked, may be stale."""
    serial_arg = request.args.get("serial")
    serial = int_field(serial_arg, "serial") if serial_arg else None
    snapshot = coordinator().read(key, principal(), serial=serial)
    return jsonify({
        "key": snapshot.version.key,
        "serial": snapshot.serial,
        "fingerprint": snapshot.fingerprint,
        "payload": encode_payload(snapshot.payload),
        "version": snapshot.version.model_dump(mode="json"),
    })


@state_bp.route("/state/<path:key>", methods=["POST"])
def commit_state(key: str):  # type: ignore[no-untyped-def]
    """Commit through a held lock. 409 with ``current_serial`` on a stale base."""
    body = json_body()
    version = coordinator().commit(
        key,
        require_field(body, "lock_id"),
        int_field(require_field(body, "base_serial"), "base_serial"),
        decode_payload(require_field(body, "payload")),
        principal(),
    )
    return jsonify({"new_serial": version.serial, "version": version.model_dump(mode="json")}), 201


@state_bp.route("/history/<path:key>")
def history(key: str):  # type: ignore[no-untyped-def]
    order = request.args.get("order", "newest")
    if order not in ("newest", "oldest"):
        raise ValueError("'order' must be 'newest' or 'oldest'")
    page = coordinator().history(
        key,
        principal(),
        newest_first=order == "newest",
        limit=int_field(request.args.get("limit", 50), "limit"),
        page_token=request.args.get("page_token") or None,
    )
    return jsonify(page.to_dict())


@state_bp.route("/restore", methods=["POST"])
def restore():  # type: ignore[no-untyped-def]
    """Re-commit ``target_serial`` as a new version (admin)."""
    body = json_body()
    version = coordinator().raw_restore(
        require_field(body, "key"),
        int_field(require_field(body, "target_serial"), "target_serial"),
        require_field(body, "reason"),
        principal(),
        lock_id=body.get("lock_id"),
    )
    return jsonify({"new_serial": version.serial, "version": version.model_dump(mode="json")}), 201


# ── Audit / health / metrics ────────────────────────────────────────


@state_bp.route("/audit")
def audit_log():  # type: ignore[no-untyped-def]
    coord = coordinator()
    key = request.args.get("key") or None
    coord.access.require(principal(), Role.READER, AuditAction.READ, key or "")
    action = request.args.get("action")
    records = coord.audit.query(
        key=key,
        action=AuditAction(action) if action else None,
        limit=int_field(request.args.get("limit", 100), "limit"),
    )
    return jsonify({"records": [r.model_dump(mode="json") for r in records]})


@state_bp.route("/health")
def health():  # type: ignore[no-untyped-def]
    result = check_system_health(coordinator())
    return jsonify(result.to_dict()), 503 if result.status == "unhealthy" else 200


@state_bp.route("/metrics")
def metrics():  # type: ignore[no-untyped-def]
    return jsonify(coordinator().metrics.to_dict())
