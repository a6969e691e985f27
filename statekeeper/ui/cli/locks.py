"""
CLI commands for state locks.

Thin wrappers over ``StateCoordinator`` lock operations.

Usage::

    statekeeper lock acquire prod/vpc --operation apply --lease 600
    statekeeper lock renew <lock-id>
    statekeeper lock release <lock-id>
    statekeeper lock force-unlock prod/vpc <lock-id> --reason "crashed CI job"
    statekeeper lock show prod/vpc
    statekeeper lock list --stale
"""

from __future__ import annotations

import json

import click

from statekeeper.core.models.lock import LockOperation
from statekeeper.ui.cli.helpers import echo_lock, get_coordinator, get_principal, handle_store_errors


@click.group("lock")
def lock() -> None:
    """Locks — acquire, renew, release, and force-unlock state keys."""


@lock.command()
@click.argument("key")
@click.option(
    "--operation", "-o",
    type=click.Choice([op.value for op in LockOperation]),
    default=LockOperation.MANUAL.value,
    help="What the lock is for.",
)
@click.option("--lease", type=float, default=None, help="Lease duration in seconds.")
@click.option("--wait", "wait_timeout", type=float, default=None, help="Seconds to wait for a held lock.")
@click.option("--info", default="", help="Free-form note stored with the lock.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def acquire(
    ctx: click.Context,
    key: str,
    operation: str,
    lease: float | None,
    wait_timeout: float | None,
    info: str,
    as_json: bool,
) -> None:
    """Acquire the lock on KEY and print its lock ID."""
    coordinator = get_coordinator(ctx)
    granted = coordinator.acquire_lock(
        key, get_principal(ctx), operation,
        lease_duration=lease, wait_timeout=wait_timeout, info=info,
    )
    if as_json:
        click.echo(json.dumps(granted.model_dump(mode="json"), indent=2))
        return
    click.secho(f"✅ Locked {granted.key}", fg="green", bold=True)
    click.echo(f"   Lock ID: {granted.lock_id}")
    click.echo(f"   Expires: {granted.lease_expires_at.isoformat(timespec='seconds')}")


@lock.command()
@click.argument("lock_id")
@click.option("--lease", type=float, default=None, help="New lease duration in seconds (from now).")
@click.pass_context
@handle_store_errors
def renew(ctx: click.Context, lock_id: str, lease: float | None) -> None:
    """Extend the lease of LOCK_ID."""
    renewed = get_coordinator(ctx).renew_lock(lock_id, get_principal(ctx), lease)
    click.secho(f"✅ Renewed {renewed.key}", fg="green")
    click.echo(f"   Expires: {renewed.lease_expires_at.isoformat(timespec='seconds')}")


@lock.command()
@click.argument("lock_id")
@click.pass_context
@handle_store_errors
def release(ctx: click.Context, lock_id: str) -> None:
    """Release LOCK_ID. Releasing a lock that is not held is not an error."""
    if get_coordinator(ctx).release_lock(lock_id, get_principal(ctx)):
        click.secho(f"✅ Released {lock_id}", fg="green")
    else:
        click.secho(f"⚠️  Lock {lock_id} is not held (already released?)", fg="yellow")


@lock.command("force-unlock")
@click.argument("key")
@click.argument("lock_id")
@click.option("--reason", "-r", required=True, help="Administrative reason (recorded in the audit log).")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
@click.pass_context
@handle_store_errors
def force_unlock(ctx: click.Context, key: str, lock_id: str, reason: str, yes: bool) -> None:
    """Administratively clear exactly LOCK_ID from KEY."""
    coordinator = get_coordinator(ctx)
    if not yes:
        current = coordinator.get_lock(key, get_principal(ctx))
        if current is not None:
            echo_lock(current, coordinator.locks.now())
        click.confirm(
            "Force-unlocking can let two writers collide if the holder is still running. Continue?",
            abort=True,
        )
    cleared = coordinator.force_unlock(key, lock_id, reason, get_principal(ctx))
    click.secho(f"⚠️  Force-released lock on {cleared.key}", fg="yellow", bold=True)
    click.echo(f"   Was: {cleared.describe()}")
    click.echo(f"   Reason: {reason}")


@lock.command()
@click.argument("key")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def show(ctx: click.Context, key: str, as_json: bool) -> None:
    """Show the lock currently occupying KEY."""
    coordinator = get_coordinator(ctx)
    current = coordinator.get_lock(key, get_principal(ctx))
    if as_json:
        click.echo(json.dumps(current.model_dump(mode="json") if current else None, indent=2))
        return
    if current is None:
        click.echo(f"🔓 {key} is not locked")
        return
    echo_lock(current, coordinator.locks.now())


@lock.command("list")
@click.option("--stale", is_flag=True, help="Only locks whose lease has expired.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def list_locks(ctx: click.Context, stale: bool, as_json: bool) -> None:
    """List held locks."""
    coordinator = get_coordinator(ctx)
    locks = coordinator.list_locks(get_principal(ctx), stale_only=stale)
    if as_json:
        click.echo(json.dumps([lk.model_dump(mode="json") for lk in locks], indent=2))
        return
    if not locks:
        click.echo("No stale locks." if stale else "No locks held.")
        return
    now = coordinator.locks.now()
    for lk in locks:
        echo_lock(lk, now)
