"""
Shared helpers for the CLI sub-groups — store access and error reporting.
"""

from __future__ import annotations

import functools
import sys
from pathlib import Path
from typing import Any, Callable, NoReturn

import click

from statekeeper.adapters.registry import BackendConfigError
from statekeeper.core.config.loader import ConfigError
from statekeeper.core.engine.coordinator import StateCoordinator
from statekeeper.core.errors import StateStoreError
from statekeeper.core.models.lock import Lock


def get_coordinator(ctx: click.Context) -> StateCoordinator:
    """The store for this invocation (opened once, cached on the context)."""
    root = ctx.find_root()
    coordinator = root.obj.get("coordinator")
    if coordinator is None:
        from statekeeper.core.use_cases.bootstrap import open_store

        config_path: Path | None = root.obj.get("config_path")
        coordinator = open_store(config_path)
        root.obj["coordinator"] = coordinator
    return coordinator


def get_principal(ctx: click.Context) -> str:
    return ctx.find_root().obj["principal"]


def report_error(error: StateStoreError) -> NoReturn:
    """Print key, holder and next action, then exit with the result code."""
    click.secho(f"❌ {error.code.value}: {error.message}", fg="red", err=True)
    if error.key:
        click.echo(f"   Key:     {error.key}", err=True)
    holder = error.detail.get("current_holder")
    if holder:
        click.echo(
            f"   Holder:  {holder} ({error.detail.get('current_operation')}) "
            f"since {error.detail.get('since')}",
            err=True,
        )
        click.echo(f"   Lock ID: {error.detail.get('lock_id')}", err=True)
    if error.detail.get("current_serial") is not None:
        click.echo(f"   Current serial: {error.detail['current_serial']}", err=True)
    click.secho(f"   Next:    {error.next_action}", fg="yellow", err=True)
    sys.exit(error.code.exit_code)


def handle_store_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Turn store errors into a diagnostic and the matching exit code."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except StateStoreError as e:
            report_error(e)
        except (ConfigError, BackendConfigError) as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(1)
        except ValueError as e:
            raise click.UsageError(str(e)) from e

    return wrapper


def echo_lock(lock: Lock, now: Any = None) -> None:
    stale = lock.is_stale(now)
    click.secho(f"   🔒 {lock.key}", fg="yellow" if stale else "cyan", bold=True)
    click.echo(f"      Lock ID:   {lock.lock_id}")
    click.echo(f"      Holder:    {lock.holder} ({lock.operation.value})")
    click.echo(f"      Acquired:  {lock.acquired_at.isoformat(timespec='seconds')}")
    expiry = lock.lease_expires_at.isoformat(timespec="seconds")
    if stale:
        click.secho(f"      Lease:     EXPIRED at {expiry} (stale)", fg="yellow")
    else:
        click.echo(f"      Lease:     until {expiry}")
    if lock.info:
        click.echo(f"      Info:      {lock.info}")
