"""
Version ledger — append-only history of state snapshots per key.

The ledger exclusively owns serial assignment and the current-version
pointer.  Payload bytes go to the key's blob namespace; metadata goes
to the ledger index, saved with a compare-and-swap on the current
serial so even a write that bypassed the lock cannot silently
overwrite newer data.

Commit sequence (under the caller's lock):
    check base_serial → put blob → append version → CAS-save record
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Callable

from statekeeper.adapters.base import StorageBackend
from statekeeper.core.errors import CorruptState, StateNotFound, VersionConflict
from statekeeper.core.models.config import RetentionPolicy
from statekeeper.core.models.keys import validate_key
from statekeeper.core.models.lock import utc_now
from statekeeper.core.models.version import (
    HistoryPage,
    LedgerRecord,
    StateSnapshot,
    StateVersion,
    fingerprint_of,
)
from statekeeper.core.observability.metrics import MetricsRegistry
from statekeeper.core.reliability.guarded import StorageGuard
from statekeeper.core.reliability.retry import RetryPolicy
from statekeeper.core.services.ledger.retention import select_prunable

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000


class VersionLedger:
    """Serial assignment, history, and pruning for every key of a backend."""

    def __init__(
        self,
        backend: StorageBackend,
        retry: RetryPolicy | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend
        retry = retry or RetryPolicy()
        self._blob_guard = StorageGuard(backend.breakers.get_or_create(f"{backend.name}:blobs"), retry)
        self._index_guard = StorageGuard(backend.breakers.get_or_create(f"{backend.name}:ledger"), retry)
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock

    # ── Reads ───────────────────────────────────────────────────

    def record(self, key: str) -> LedgerRecord | None:
        key = validate_key(key)
        return self._index_guard.call("ledger.load", lambda: self._backend.index.load(key), key=key)

    def keys(self) -> list[str]:
        return self._index_guard.call("ledger.keys", self._backend.index.keys)

    def current_serial(self, key: str) -> int:
        """Serial of the current version (0 if the key was never written)."""
        record = self.record(key)
        return record.current_serial if record else 0

    def current_version(self, key: str) -> StateVersion | None:
        """Metadata of the current version, without fetching the payload."""
        record = self.record(key)
        return record.current if record else None

    def current(self, key: str) -> StateSnapshot:
        """The current version with its verified payload.

        Reads without a lock may be stale by the time they return.

        Raises:
            StateNotFound: The key has never been written.
            CorruptState: The payload fails its fingerprint check.
        """
        key = validate_key(key)
        version = self.current_version(key)
        if version is None:
            raise StateNotFound(f"No state stored for {key}", key=key)
        return self._load(version)

    def read(self, key: str, serial: int) -> StateSnapshot:
        """A specific retained version with its verified payload."""
        key = validate_key(key)
        record = self.record(key)
        version = record.get(serial) if record else None
        if version is None:
            raise StateNotFound(
                f"Serial {serial} of {key} does not exist or was pruned",
                key=key,
                next_action="List retained versions with 'statekeeper state history'.",
            )
        return self._load(version)

    def _load(self, version: StateVersion) -> StateSnapshot:
        blobs = self._backend.blobs(version.key)
        try:
            payload = self._blob_guard.call(
                "blob.get", lambda: blobs.get(version.content_id), key=version.key
            )
        except StateNotFound as e:
            raise CorruptState(
                f"Payload of serial {version.serial} is missing from the blob store",
                key=version.key,
                serial=version.serial,
                expected=version.fingerprint,
                actual="<missing>",
            ) from e
        except CorruptState as e:
            raise CorruptState(
                f"Payload of serial {version.serial} failed its integrity check",
                key=version.key,
                serial=version.serial,
                expected=version.fingerprint,
                actual=e.actual,
            ) from e

        if fingerprint_of(payload) != version.fingerprint:
            raise CorruptState(
                f"Payload of serial {version.serial} does not match the recorded fingerprint",
                key=version.key,
                serial=version.serial,
                expected=version.fingerprint,
                actual=fingerprint_of(payload),
            )
        return StateSnapshot(version=version, payload=payload)

    # ── History ─────────────────────────────────────────────────

    def history(
        self,
        key: str,
        newest_first: bool = True,
        limit: int = DEFAULT_PAGE_SIZE,
        page_token: str | None = None,
        start_serial: int | None = None,
        end_serial: int | None = None,
    ) -> HistoryPage:
        """One page of version metadata, optionally bounded to a serial range.

        ``page_token`` is the opaque cursor returned by the previous page.
        """
        key = validate_key(key)
        if limit <= 0:
            raise ValueError("limit must be positive")
        limit = min(limit, MAX_PAGE_SIZE)

        cursor: int | None = None
        if page_token:
            try:
                cursor = int(page_token)
            except ValueError:
                raise ValueError(f"Invalid page token: {page_token!r}") from None

        record = self.record(key)
        if record is None:
            return HistoryPage(versions=[])

        versions = sorted(record.versions, key=lambda v: v.serial, reverse=newest_first)
        if start_serial is not None:
            versions = [v for v in versions if v.serial >= start_serial]
        if end_serial is not None:
            versions = [v for v in versions if v.serial <= end_serial]
        if cursor is not None:
            versions = [
                v for v in versions
                if (v.serial < cursor if newest_first else v.serial > cursor)
            ]

        page = versions[:limit]
        next_token = str(page[-1].serial) if len(versions) > limit else None
        return HistoryPage(versions=page, next_page_token=next_token)

    def iter_history(self, key: str, newest_first: bool = True, page_size: int = 100) -> Iterator[StateVersion]:
        """Lazily walk the whole history page by page."""
        token: str | None = None
        while True:
            page = self.history(key, newest_first=newest_first, limit=page_size, page_token=token)
            yield from page.versions
            if page.next_page_token is None:
                return
            token = page.next_page_token

    # ── Commit ──────────────────────────────────────────────────

    def commit(
        self,
        key: str,
        base_serial: int,
        payload: bytes,
        created_by: str = "",
        note: str = "",
        restored_from: int | None = None,
    ) -> StateVersion:
        """Append a new version if ``base_serial`` is still current.

        Raises:
            VersionConflict: ``base_serial`` is stale. Nothing is written
                to the ledger.
        """
        key = validate_key(key)
        record = self.record(key) or LedgerRecord(key=key)
        if base_serial != record.current_serial:
            self._metrics.inc("ledger.conflicts")
            logger.error(
                "Commit to %s rejected: base serial %d, current serial %d",
                key, base_serial, record.current_serial,
            )
            raise VersionConflict(
                f"Base serial {base_serial} is stale; current serial is {record.current_serial}",
                key=key,
                current_serial=record.current_serial,
            )

        fingerprint = fingerprint_of(payload)
        blobs = self._backend.blobs(key)
        content_id = self._blob_guard.call(
            "blob.put", lambda: blobs.put(fingerprint, payload), key=key
        )

        now = self._clock()
        version = StateVersion(
            key=key,
            serial=record.current_serial + 1,
            fingerprint=fingerprint,
            content_id=content_id,
            size=len(payload),
            created_at=now,
            created_by=created_by,
            restored_from=restored_from,
            note=note,
        )
        record.versions.append(version)
        record.current_serial = version.serial
        record.updated_at = now

        self._index_guard.call(
            "ledger.save", lambda: self._backend.index.save(record, expected_serial=base_serial), key=key
        )
        self._metrics.inc("ledger.commits")
        logger.info("Committed %s serial %d (%s, %d bytes)", key, version.serial, fingerprint[:12], len(payload))
        return version

    def import_chain(self, key: str, snapshots: list[StateSnapshot]) -> list[StateVersion]:
        """Adopt an existing version chain into an empty key (migration).

        Serials, fingerprints, authors and timestamps are preserved.
        Serials must be strictly increasing; gaps left by pruning are kept.

        Raises:
            VersionConflict: The key already has history.
            ValueError: Empty or out-of-order chain.
        """
        key = validate_key(key)
        if not snapshots:
            raise ValueError("Cannot import an empty version chain")
        serials = [s.version.serial for s in snapshots]
        if any(b <= a for a, b in zip(serials, serials[1:])) or serials[0] < 1:
            raise ValueError(f"Version chain for {key} is not strictly increasing: {serials}")

        existing = self.record(key)
        if existing is not None and existing.current_serial != 0:
            raise VersionConflict(
                f"Destination already has history (serial {existing.current_serial})",
                key=key,
                current_serial=existing.current_serial,
            )

        blobs = self._backend.blobs(key)
        imported: list[StateVersion] = []
        for snapshot in snapshots:
            version = snapshot.version
            content_id = self._blob_guard.call(
                "blob.put", lambda: blobs.put(version.fingerprint, snapshot.payload), key=key
            )
            imported.append(version.model_copy(update={"key": key, "content_id": content_id}))

        record = LedgerRecord(key=key, current_serial=imported[-1].serial, versions=imported)
        self._index_guard.call(
            "ledger.save", lambda: self._backend.index.save(record, expected_serial=0), key=key
        )
        logger.info("Imported %d version(s) into %s (current serial %d)", len(imported), key, record.current_serial)
        return imported

    # ── Prune ───────────────────────────────────────────────────

    def prune(self, key: str, policy: RetentionPolicy, now: datetime | None = None) -> list[StateVersion]:
        """Permanently remove versions the policy allows. Returns what was removed.

        Blobs still referenced by a retained version (e.g. the source of
        a restore) are kept.
        """
        key = validate_key(key)
        record = self.record(key)
        if record is None:
            return []

        removable = select_prunable(record, policy, now or self._clock())
        if not removable:
            return []

        removed_serials = {v.serial for v in removable}
        record.versions = [v for v in record.versions if v.serial not in removed_serials]
        record.updated_at = self._clock()
        self._index_guard.call(
            "ledger.save",
            lambda: self._backend.index.save(record, expected_serial=record.current_serial),
            key=key,
        )

        still_referenced = record.referenced_content()
        blobs = self._backend.blobs(key)
        for content_id in {v.content_id for v in removable} - still_referenced:
            self._blob_guard.call("blob.delete", lambda: blobs.delete(content_id), key=key)

        self._metrics.inc("ledger.pruned", len(removable))
        logger.warning(
            "Pruned %d version(s) of %s: serials %s",
            len(removable), key, ", ".join(str(v.serial) for v in removable),
        )
        return removable
