"""
State keys — hierarchical identifiers for one logical state file.

A key looks like ``prod/vpc`` or ``team-a/staging/network``: one to
eight ``/``-separated segments of letters, digits, ``.``, ``_`` and ``-``.
Keys map directly onto storage namespaces, so anything that could
escape a directory (``..``, absolute paths, backslashes) is rejected.
"""

from __future__ import annotations

import re

MAX_SEGMENTS = 8
MAX_LENGTH = 256

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_key(key: str) -> str:
    """Validate and normalize a state key.

    Leading/trailing slashes and whitespace are stripped.

    Raises:
        ValueError: If the key is empty, too long, too deep, or contains
            an invalid segment.
    """
    if not isinstance(key, str):
        raise ValueError(f"State key must be a string, got {type(key).__name__}")

    normalized = key.strip().strip("/")
    if not normalized:
        raise ValueError("State key must not be empty")
    if len(normalized) > MAX_LENGTH:
        raise ValueError(f"State key longer than {MAX_LENGTH} characters: {normalized[:40]}…")

    segments = normalized.split("/")
    if len(segments) > MAX_SEGMENTS:
        raise ValueError(f"State key deeper than {MAX_SEGMENTS} segments: {normalized}")
    for segment in segments:
        if segment in (".", "..") or not _SEGMENT_RE.match(segment):
            raise ValueError(f"Invalid segment {segment!r} in state key {normalized!r}")

    return normalized


def key_parts(key: str) -> list[str]:
    """Split a validated key into its segments."""
    return validate_key(key).split("/")
