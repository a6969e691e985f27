"""
Atomic file writes — temp file in the same directory, then rename.

Used for every piece of metadata the local backend keeps on disk
(ledger records, lock slots, blobs).  A crash mid-write leaves either
the old file or the new one, never a torn file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TMP_PREFIX = ".stk_"
TMP_SUFFIX = ".tmp"


def write_bytes_atomic(path: Path, content: bytes) -> None:
    """Write ``content`` to ``path`` atomically (fsync, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=TMP_PREFIX, suffix=TMP_SUFFIX)
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    logger.debug("Wrote %s (%d bytes)", path, len(content))


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize ``data`` as indented JSON and write it atomically."""
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_bytes_atomic(path, content.encode("utf-8"))


def read_json(path: Path) -> Any | None:
    """Read a JSON file. Returns None if the file does not exist.

    Raises:
        json.JSONDecodeError: If the file exists but is not valid JSON.
            Callers decide whether that is corruption; it is never
            silently replaced with a fresh document here.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(raw)
