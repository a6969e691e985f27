"""
Logging setup — console and file handlers, tagged with the active session.

``setup_logging`` runs once per process (the CLI root group, or
``statekeeper serve``).  Modules log through
``logging.getLogger(__name__)`` as usual.

Inside ``session_context(key, lock_id)`` every record carries
``state_key``, ``lock_id`` and a ready-made ``session`` prefix such as
``[prod/vpc 3f9c2a1e] ``.  The coordinator opens that context around
each locked session, so a lock conflict or a failed commit can be
traced back to the lock that produced it, even when several sessions
log from different threads.

Level precedence:
    --debug / --verbose / --quiet  >  STATEKEEPER_LOG_LEVEL  >  WARNING

File output: STATEKEEPER_LOG_FILE, at STATEKEEPER_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

ENV_LOG_LEVEL = "STATEKEEPER_LOG_LEVEL"
ENV_LOG_FILE = "STATEKEEPER_LOG_FILE"
ENV_LOG_FILE_LEVEL = "STATEKEEPER_LOG_FILE_LEVEL"

_session: ContextVar[tuple[str, str] | None] = ContextVar("statekeeper_session", default=None)

_FMT_MINIMAL = "%(session)s%(message)s"
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(session)s%(message)s"
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(session)s%(message)s"
_DATEFMT_SHORT = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# werkzeug logs every request at INFO under ``statekeeper serve``
_NOISY_LOGGERS = ("werkzeug", "urllib3")


@contextmanager
def session_context(key: str, lock_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``key`` and ``lock_id``."""
    token = _session.set((key, lock_id))
    try:
        yield
    finally:
        _session.reset(token)


class SessionContextFilter(logging.Filter):
    """Adds ``state_key``, ``lock_id`` and ``session`` to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = _session.get()
        if current is None:
            record.state_key = ""
            record.lock_id = ""
            record.session = ""
        else:
            key, lock_id = current
            record.state_key = key
            record.lock_id = lock_id
            record.session = f"[{key} {lock_id[:8]}] "
        return True


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Console level from the CLI flags, falling back to the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LOG_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Install the console (and optional file) handlers on the root logger.

    Args:
        level: Console level name. Unknown names fall back to WARNING.
        log_file: Append full-detail records to this file as well.
        log_file_level: Level for the file. Defaults to ``level``.
        quiet_third_party: Hold werkzeug/urllib3 at WARNING unless DEBUG.
    """
    numeric_level = _parse_level(level)
    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_SHORT
    elif numeric_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_SHORT
    else:
        fmt, datefmt = _FMT_MINIMAL, None

    session_filter = SessionContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    console.addFilter(session_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_FILE))
        fh.addFilter(session_filter)
        root.addHandler(fh)

    root.setLevel(effective_level)

    if quiet_third_party and numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def setup_from_environment(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """``setup_logging`` driven by CLI flags and STATEKEEPER_LOG_* variables.

    Returns the console level that was applied.
    """
    level = resolve_level(debug, verbose, quiet)
    setup_logging(
        level=level,
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
        quiet_third_party=not debug,
    )
    return level


def _parse_level(level: str | None) -> int:
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
