"""
Audit log — append-only record of every lock, read, and write event.

Every coordinator phase writes one entry to an NDJSON (newline-delimited
JSON) file, or to an in-memory list when the store runs without disk.
Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditAction(StrEnum):
    LOCK_ACQUIRE = "LockAcquire"
    LOCK_RENEW = "LockRenew"
    LOCK_RELEASE = "LockRelease"
    LOCK_FORCE_RELEASE = "LockForceRelease"
    READ = "Read"
    WRITE = "Write"
    PRUNE = "Prune"


class AuditOutcome(StrEnum):
    SUCCESS = "Success"
    DENIED = "Denied"
    ERROR = "Error"


class AuditRecord(BaseModel):
    """A single audit log entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    key: str = ""
    lock_id: str | None = None
    principal: str = ""
    action: AuditAction
    outcome: AuditOutcome = AuditOutcome.SUCCESS

    serial: int | None = None
    reason: str = ""                # administrative reason (force-unlock, restore, prune)
    detail: str = ""                # error message or short description
    context: dict[str, Any] = Field(default_factory=dict)


class AuditLog:
    """Append-only audit log writer/reader.

    With a ``path``, each ``write()`` appends one JSON line to the file
    (created on first write).  Without one, entries are kept in memory.
    """

    def __init__(self, path: Path | None = None):
        self._path = path
        self._memory: list[AuditRecord] = []
        self._lock = threading.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def write(self, record: AuditRecord) -> None:
        """Append an audit record.

        A failed disk write is logged, not raised: the operation being
        audited has already happened and must still report its result.
        """
        with self._lock:
            if self._path is None:
                self._memory.append(record)
                return

            line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
                logger.debug("Audit: %s %s %s", record.action, record.key, record.outcome)
            except OSError as e:
                logger.error("Failed to write audit record %s/%s: %s", record.action, record.key, e)

    def read_all(self) -> list[AuditRecord]:
        """All records, oldest first. Corrupt lines are skipped."""
        if self._path is None:
            with self._lock:
                return list(self._memory)

        if not self._path.is_file():
            return []

        records = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(AuditRecord.model_validate(json.loads(line)))
                    except ValueError as e:
                        logger.warning("Skipping corrupt audit record at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read audit log: %s", e)

        return records

    def query(
        self,
        key: str | None = None,
        action: AuditAction | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        """Filter records by key and/or action; ``limit`` keeps the newest N."""
        records = [
            r for r in self.read_all()
            if (key is None or r.key == key) and (action is None or r.action == action)
        ]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def read_recent(self, n: int = 20) -> list[AuditRecord]:
        return self.query(limit=n)

    def entry_count(self) -> int:
        if self._path is None:
            with self._lock:
                return len(self._memory)
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
