"""
API server shared helpers.

Request parsing and error mapping used across the route blueprints.
Every store error becomes ``{"error": code, "message", "key",
"next_action", ...}`` with the HTTP status of its result code.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from flask import Flask, Response, current_app, jsonify, request

from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.errors import StateStoreError

logger = logging.getLogger(__name__)

PRINCIPAL_HEADER = "X-Statekeeper-Principal"


def coordinator() -> StateCoordinator:
    return current_app.config["COORDINATOR"]


def principal() -> str:
    """Caller identity from the request header."""
    value = request.headers.get(PRINCIPAL_HEADER, "").strip()
    if not value:
        raise ValueError(f"Missing {PRINCIPAL_HEADER} header")
    return value


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def require_field(body: dict[str, Any], name: str) -> Any:
    value = body.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing '{name}'")
    return value


def optional_float(body: dict[str, Any], name: str) -> float | None:
    value = body.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be a number") from None


def int_field(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be an integer") from None


def encode_payload(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def decode_payload(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError("'payload' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"'payload' is not valid base64: {e}") from None


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(StateStoreError)
    def _store_error(e: StateStoreError) -> tuple[Response, int]:
        if e.code.http_status >= 500:
            logger.error("API %s %s failed: %s", request.method, request.path, e)
        return jsonify(e.to_dict()), e.code.http_status

    @app.errorhandler(ValueError)
    def _bad_request(e: ValueError) -> tuple[Response, int]:
        return jsonify({"error": "BadRequest", "message": str(e)}), 400
