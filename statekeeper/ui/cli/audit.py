"""
CLI commands for the audit log.

Usage::

    statekeeper audit log
    statekeeper audit log --key prod/vpc --action LockForceRelease -n 50
"""

from __future__ import annotations

import json

import click

from statekeeper.core.models.config import Role
from statekeeper.core.persistence.audit import AuditAction
from statekeeper.ui.cli.helpers import get_coordinator, get_principal, handle_store_errors

_OUTCOME_COLORS = {"Success": "green", "Denied": "yellow", "Error": "red"}


@click.group()
def audit() -> None:
    """Audit — inspect the append-only event log."""


@audit.command("log")
@click.option("--key", default=None, help="Only events for this state key.")
@click.option(
    "--action",
    type=click.Choice([a.value for a in AuditAction]),
    default=None,
    help="Only events of this kind.",
)
@click.option("--limit", "-n", type=int, default=20, help="Newest N events.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def log_cmd(ctx: click.Context, key: str | None, action: str | None, limit: int, as_json: bool) -> None:
    """Show recent audit events, oldest first."""
    coordinator = get_coordinator(ctx)
    coordinator.access.require(get_principal(ctx), Role.READER, AuditAction.READ, key or "")
    records = coordinator.audit.query(
        key=key, action=AuditAction(action) if action else None, limit=limit,
    )

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        click.echo("No audit events.")
        return

    for r in records:
        click.echo(f"   {r.timestamp[:19]}  ", nl=False)
        click.secho(f"{r.outcome.value:<7}", fg=_OUTCOME_COLORS.get(r.outcome.value), nl=False)
        click.echo(f"  {r.action.value:<16} {r.key or '-':<24} {r.principal}", nl=False)
        extra = " ".join(
            part for part in (
                f"serial={r.serial}" if r.serial is not None else "",
                f"lock={r.lock_id[:8]}" if r.lock_id else "",
                f"reason={r.reason!r}" if r.reason else "",
                r.detail,
            ) if part
        )
        click.echo(f"  {extra}" if extra else "")
