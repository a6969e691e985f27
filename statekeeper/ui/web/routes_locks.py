"""
Lock API routes — acquire, renew, release, and force-unlock.

All endpoints return JSON and are prefixed under /api/locks.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from statekeeper.core.models.lock import LockOperation

from .helpers import coordinator, json_body, optional_float, principal, require_field

logger = logging.getLogger(__name__)

locks_bp = Blueprint("locks", __name__)


@locks_bp.route("/locks", methods=["POST"])
def acquire_lock():  # type: ignore[no-untyped-def]
    """Acquire a lock. 201 with the lock, or 423 with the current holder."""
    body = json_body()
    lock = coordinator().acquire_lock(
        require_field(body, "key"),
        principal(),
        body.get("operation") or LockOperation.MANUAL.value,
        lease_duration=optional_float(body, "lease_duration"),
        wait_timeout=optional_float(body, "wait_timeout"),
        info=body.get("info", ""),
    )
    return jsonify({
        "lock_id": lock.lock_id,
        "expires_at": lock.lease_expires_at.isoformat(),
        "lock": lock.model_dump(mode="json"),
    }), 201


@locks_bp.route("/locks/<lock_id>/renew", methods=["POST"])
def renew_lock(lock_id: str):  # type: ignore[no-untyped-def]
    body = json_body()
    lock = coordinator().renew_lock(lock_id, principal(), optional_float(body, "lease_duration"))
    return jsonify({
        "lock_id": lock.lock_id,
        "expires_at": lock.lease_expires_at.isoformat(),
        "lock": lock.model_dump(mode="json"),
    })


@locks_bp.route("/locks/<lock_id>", methods=["DELETE"])
def release_lock(lock_id: str):  # type: ignore[no-untyped-def]
    """Release a lock. A lock that is not held answers ``NotHeld``, not an error."""
    released = coordinator().release_lock(lock_id, principal())
    return jsonify({"lock_id": lock_id, "status": "ok" if released else "NotHeld"})


@locks_bp.route("/locks/force-unlock", methods=["POST"])
def force_unlock():  # type: ignore[no-untyped-def]
    body = json_body()
    cleared = coordinator().force_unlock(
        require_field(body, "key"),
        require_field(body, "lock_id"),
        require_field(body, "reason"),
        principal(),
    )
    return jsonify({"status": "ok", "cleared": cleared.model_dump(mode="json")})


@locks_bp.route("/locks")
def list_locks():  # type: ignore[no-untyped-def]
    """All held locks; ``?stale=1`` for expired leases, ``?key=`` for one key."""
    stale_only = request.args.get("stale", "").lower() in ("1", "true", "yes")
    key = request.args.get("key")
    coord = coordinator()
    if key:
        lock = coord.get_lock(key, principal())
        locks = [lock] if lock is not None and (not stale_only or lock.is_stale(coord.locks.now())) else []
    else:
        locks = coord.list_locks(principal(), stale_only=stale_only)
    now = coord.locks.now()
    return jsonify({
        "locks": [
            {**lk.model_dump(mode="json"), "stale": lk.is_stale(now)}
            for lk in locks
        ],
    })
