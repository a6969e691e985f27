"""
CLI commands for state versions.

Thin wrappers over ``StateCoordinator`` and ``migrate_state``.

Usage::

    statekeeper state pull prod/vpc -o terraform.tfstate
    statekeeper state push prod/vpc terraform.tfstate --operation apply
    statekeeper state push prod/vpc new.tfstate --lock-id <id> --base-serial 7
    statekeeper state history prod/vpc --limit 20
    statekeeper state restore prod/vpc 3 --reason "bad apply at serial 7"
    statekeeper state prune prod/vpc --reason "quarterly cleanup"
    statekeeper state migrate --to ../new/statekeeper.yml --reason "move to shared disk"
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from statekeeper.core.models.config import RetentionPolicy
from statekeeper.core.models.lock import LockOperation
from statekeeper.ui.cli.helpers import get_coordinator, get_principal, handle_store_errors


@click.group("state")
def state() -> None:
    """State — pull, push, history, restore, prune, and migrate."""


@state.command()
@click.argument("key")
@click.option("--serial", type=int, default=None, help="Read a specific retained version.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write payload to a file.")
@click.pass_context
@handle_store_errors
def pull(ctx: click.Context, key: str, serial: int | None, output: str | None) -> None:
    """Print the current (or a given) version of KEY.

    Reads without a lock; the result may already be stale.
    """
    snapshot = get_coordinator(ctx).read(key, get_principal(ctx), serial=serial)
    if output:
        Path(output).write_bytes(snapshot.payload)
        click.secho(
            f"✅ {key} serial {snapshot.serial} → {output} ({len(snapshot.payload)} bytes)",
            fg="green", err=True,
        )
        return
    sys.stdout.buffer.write(snapshot.payload)
    sys.stdout.buffer.flush()


@state.command()
@click.argument("key")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--operation", "-o",
    type=click.Choice([op.value for op in LockOperation]),
    default=LockOperation.APPLY.value,
    help="Lock operation recorded for this push.",
)
@click.option("--lock-id", default=None, help="Commit through a lock acquired earlier.")
@click.option("--base-serial", type=int, default=None, help="Serial the payload was derived from.")
@click.option("--lease", type=float, default=None, help="Lease duration in seconds.")
@click.option("--wait", "wait_timeout", type=float, default=None, help="Seconds to wait for a held lock.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def push(
    ctx: click.Context,
    key: str,
    file: str,
    operation: str,
    lock_id: str | None,
    base_serial: int | None,
    lease: float | None,
    wait_timeout: float | None,
    as_json: bool,
) -> None:
    """Commit FILE as the new version of KEY.

    Without --lock-id the command takes the lock, commits, and releases.
    With --lock-id it commits through that lock and --base-serial is required.
    """
    coordinator = get_coordinator(ctx)
    principal = get_principal(ctx)
    payload = Path(file).read_bytes()

    if lock_id is not None:
        if base_serial is None:
            raise click.UsageError("--base-serial is required with --lock-id")
        version = coordinator.commit(key, lock_id, base_serial, payload, principal)
        if as_json:
            click.echo(json.dumps(version.model_dump(mode="json"), indent=2))
            return
        click.secho(f"✅ Committed {key} serial {version.serial}", fg="green", bold=True)
        return

    result = coordinator.with_session(
        key, principal, operation,
        lambda _state: payload,
        lease_duration=lease,
        wait_timeout=wait_timeout,
        expected_serial=base_serial,
    )
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.committed:
        click.secho(f"✅ Committed {key} serial {result.serial}", fg="green", bold=True)
    else:
        click.echo(f"➖ {key} unchanged at serial {result.serial} ({result.reason})")

    if result.release_error is not None:
        click.secho(f"⚠️  Lock release failed: {result.release_error}", fg="yellow", err=True)
        click.echo(f"   Next: {result.release_error.next_action}", err=True)


@state.command()
@click.argument("key")
@click.option("--limit", "-n", type=int, default=20, help="Versions per page.")
@click.option("--page-token", default=None, help="Continue from a previous page.")
@click.option("--oldest-first", is_flag=True, help="List oldest versions first.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def history(
    ctx: click.Context,
    key: str,
    limit: int,
    page_token: str | None,
    oldest_first: bool,
    as_json: bool,
) -> None:
    """List retained versions of KEY (metadata only)."""
    coordinator = get_coordinator(ctx)
    page = coordinator.history(
        key, get_principal(ctx),
        newest_first=not oldest_first, limit=limit, page_token=page_token,
    )
    if as_json:
        click.echo(json.dumps(page.to_dict(), indent=2))
        return

    if not page.versions:
        click.echo(f"No versions of {key}.")
        return

    current = coordinator.ledger.current_serial(key)
    click.secho(f"\n📜 {key}", fg="cyan", bold=True)
    for v in page.versions:
        marker = " ← current" if v.serial == current else ""
        restored = f" (restored from {v.restored_from})" if v.restored_from else ""
        click.echo(
            f"   {v.serial:>5}  {v.created_at.isoformat(timespec='seconds')}  "
            f"{v.fingerprint[:12]}  {v.size:>8}B  {v.created_by}{restored}{marker}"
        )
    if page.next_page_token:
        click.echo(f"\n   More: --page-token {page.next_page_token}")
    click.echo()


@state.command()
@click.argument("key")
@click.argument("serial", type=int)
@click.option("--reason", "-r", required=True, help="Administrative reason (recorded in the audit log).")
@click.option("--lock-id", default=None, help="Restore through a lock acquired earlier.")
@click.option("--wait", "wait_timeout", type=float, default=None, help="Seconds to wait for a held lock.")
@click.pass_context
@handle_store_errors
def restore(
    ctx: click.Context,
    key: str,
    serial: int,
    reason: str,
    lock_id: str | None,
    wait_timeout: float | None,
) -> None:
    """Re-commit version SERIAL of KEY as a new version."""
    version = get_coordinator(ctx).raw_restore(
        key, serial, reason, get_principal(ctx), lock_id=lock_id, wait_timeout=wait_timeout,
    )
    click.secho(
        f"⚠️  Restored {key}: serial {serial} re-committed as serial {version.serial}",
        fg="yellow", bold=True,
    )


@state.command()
@click.argument("key")
@click.option("--reason", "-r", required=True, help="Administrative reason (recorded in the audit log).")
@click.option("--keep-last", type=int, default=None, help="Override retention.keep_last.")
@click.option("--min-age-days", type=float, default=None, help="Override retention.min_age_days.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
@click.pass_context
@handle_store_errors
def prune(
    ctx: click.Context,
    key: str,
    reason: str,
    keep_last: int | None,
    min_age_days: float | None,
    yes: bool,
) -> None:
    """Permanently remove old versions of KEY."""
    coordinator = get_coordinator(ctx)
    policy = coordinator.config.retention
    overrides = {
        name: value
        for name, value in (("keep_last", keep_last), ("min_age_days", min_age_days))
        if value is not None
    }
    if overrides:
        policy = RetentionPolicy.model_validate({**policy.model_dump(), **overrides})

    if not yes:
        click.confirm(
            f"Prune {key} (keep last {policy.keep_last}, younger than "
            f"{policy.min_age_days:g} days)? Removed versions cannot be restored.",
            abort=True,
        )
    removed = coordinator.prune(key, get_principal(ctx), reason, policy=policy)
    if not removed:
        click.echo(f"Nothing to prune for {key}.")
        return
    click.secho(f"🗑️  Pruned {len(removed)} version(s) of {key}", fg="yellow", bold=True)
    click.echo(f"   Serials: {', '.join(str(v.serial) for v in removed)}")


@state.command()
@click.option(
    "--to", "destination_config",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="statekeeper.yml of the destination store.",
)
@click.option("--key", "keys", multiple=True, help="Keys to migrate (default: all).")
@click.option("--reason", "-r", required=True, help="Administrative reason (recorded in the audit log).")
@click.option("--dry-run", is_flag=True, help="Report the plan without copying.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def migrate(
    ctx: click.Context,
    destination_config: str,
    keys: tuple[str, ...],
    reason: str,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Copy version chains into another store."""
    from statekeeper.core.services.migration import migrate_state
    from statekeeper.core.use_cases.bootstrap import open_store

    source = get_coordinator(ctx)
    destination = open_store(Path(destination_config))
    result = migrate_state(
        source, destination, get_principal(ctx), reason,
        keys=list(keys) or None, dry_run=dry_run,
    )
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    title = "Migration plan" if dry_run else "Migration"
    click.secho(f"\n🚚 {title}: {result.source} → {result.destination}", fg="cyan", bold=True)
    icons = {"copy": "✓", "skip": "=", "empty": "·", "conflict": "✗"}
    for item in result.keys:
        verb = "would copy" if dry_run and item.action == "copy" else item.action
        click.echo(
            f"   {icons.get(item.action, '?')} {item.key}: {verb} "
            f"({item.versions} version(s), serial {item.current_serial}) {item.message}".rstrip()
        )
    click.echo()
