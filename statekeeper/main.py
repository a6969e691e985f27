"""
statekeeper — CLI entrypoint.

Usage:
    statekeeper --help
    statekeeper status
    statekeeper config check
    statekeeper lock acquire prod/vpc --operation apply
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from statekeeper import __version__
from statekeeper.core.observability.logging_config import setup_from_environment
from statekeeper.core.services.access import ENV_PRINCIPAL, default_principal
from statekeeper.ui.cli.helpers import get_coordinator, handle_store_errors


@click.group()
@click.version_option(version=__version__, prog_name="statekeeper")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to statekeeper.yml (default: auto-detect).",
)
@click.option(
    "--as",
    "principal",
    default=None,
    help=f"Act as this principal (default: ${ENV_PRINCIPAL} or user@host).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    principal: str | None,
) -> None:
    """statekeeper — locked, versioned infrastructure state."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["principal"] = principal or default_principal()

    setup_from_environment(debug=debug, verbose=verbose, quiet=quiet)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show every state key, its serial, and its lock."""
    from statekeeper.core.use_cases.status import get_status

    result = get_status(
        config_path=ctx.obj.get("config_path"),
        coordinator=ctx.obj.get("coordinator"),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if not ctx.obj.get("quiet", False):
        click.secho(f"\n📦 {result.store_name}", fg="cyan", bold=True)
        click.echo(f"   Backend: {result.backend.get('name')} @ {result.backend.get('location') or '-'}")
        click.echo()

    click.secho(f"   Keys: {len(result.keys)}", fg="white", bold=True)
    for item in result.keys:
        serial = item.current.serial if item.current else 0
        lock_label = ""
        if item.lock is not None:
            lock_label = f"  🔒 {item.lock.holder} ({item.lock.operation.value})"
            if item.lock_stale:
                lock_label += " STALE"
        click.echo(f"     • {item.key}  serial {serial}{lock_label}")

    if result.stale_count:
        click.echo()
        click.secho(
            f"   ⚠️  {result.stale_count} stale lock(s); see 'statekeeper lock list --stale'",
            fg="yellow",
        )
    click.echo()


@cli.group()
def config() -> None:
    """Store configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate statekeeper.yml configuration."""
    from statekeeper.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid and result.config is not None:
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Store:   {result.config.name}")
        click.echo(f"   Backend: {result.config.backend.type}")
        click.echo(f"   Lease:   {result.config.locking.lease_seconds:g}s")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@handle_store_errors
def health(ctx: click.Context, as_json: bool) -> None:
    """Show store health for storage, locks and circuit breakers."""
    from statekeeper.core.observability.health import check_system_health

    system_health = check_system_health(get_coordinator(ctx))

    if as_json:
        click.echo(json.dumps(system_health.to_dict(), indent=2))
        if system_health.status == "unhealthy":
            sys.exit(1)
        return

    status_icons = {
        "healthy": ("💚", "green"),
        "degraded": ("🟡", "yellow"),
        "unhealthy": ("🔴", "red"),
        "unknown": ("❔", "white"),
    }
    icon, color = status_icons.get(system_health.status, ("❔", "white"))

    click.echo()
    click.secho(f"{icon} Store Health: {system_health.status.upper()}", fg=color, bold=True)
    click.echo(f"   {system_health.timestamp}")
    click.echo()

    for component in system_health.components:
        c_icon, c_color = status_icons.get(component.status, ("❔", "white"))
        click.secho(f"   {c_icon} {component.name}", fg=c_color, bold=True)
        click.echo(f"      {component.message}")

        if ctx.obj.get("verbose") and component.details:
            for key, val in component.details.items():
                click.echo(f"      {key}: {val}")

    click.echo()
    if system_health.status == "unhealthy":
        sys.exit(1)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", "-p", default=8000, type=int, help="Port number.")
@click.pass_context
@handle_store_errors
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API for remote lock holders."""
    from statekeeper.ui.web.server import create_app, run_server

    coordinator = get_coordinator(ctx)
    app = create_app(coordinator=coordinator)
    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("🔐 statekeeper API", bold=True)
    click.echo(f"   Endpoint: http://{host}:{port}/api")
    click.echo(f"   Store:    {coordinator.config.name} ({coordinator.backend.location or coordinator.backend.name})")
    if debug:
        click.secho("   Logging: DEBUG (all output)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register sub-command groups from statekeeper/ui/cli/ ─────────

from statekeeper.ui.cli.audit import audit  # noqa: E402
from statekeeper.ui.cli.locks import lock  # noqa: E402
from statekeeper.ui.cli.state import state  # noqa: E402

cli.add_command(lock)
cli.add_command(state)
cli.add_command(audit)


if __name__ == "__main__":
    cli()
