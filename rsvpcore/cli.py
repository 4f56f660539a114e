"""Typer CLI for rsvpcore."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .admission import reconcile_attending_count
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .dispatch import run_dispatch_cycle
from .errors import NotFoundError
from .storage import init_db, upgrade_database

app = typer.Typer(help="rsvpcore command-line interface")


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the dispatch scheduler starts with it when enabled."""
    config = uvicorn.Config(
        "rsvpcore.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting rsvpcore on {host}:{port}")
    server.run()


@app.command("dispatch-due")
def dispatch_due() -> None:
    """Dispatch every scheduled message that is due now."""
    try:
        init_db()
        stats = run_dispatch_cycle()
    except OperationalError as exc:
        _exit_if_readonly(exc, "dispatch messages")
        raise
    typer.echo(f"Dispatch complete: {stats}")


@app.command("reconcile-capacity")
def reconcile_capacity(
    event_id: str = typer.Argument(..., help="Event whose attending count to rebuild"),
) -> None:
    """Recompute an event's attending count from its attendee rows."""
    init_db()
    try:
        with get_session() as session:
            previous, actual = reconcile_attending_count(session, event_id)
    except NotFoundError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if previous == actual:
        typer.echo(f"Attending count for {event_id} is consistent ({actual}).")
    else:
        typer.echo(f"Attending count for {event_id} corrected: {previous} -> {actual}")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    sqlite_busy_timeout_seconds: int | None = typer.Option(
        None,
        "--sqlite-busy-timeout",
        min=0,
        help="Seconds a writer waits for a locked SQLite database",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background dispatch scheduler",
    ),
    dispatch_interval_minutes: int | None = typer.Option(
        None,
        "--dispatch-interval-minutes",
        min=1,
        help="Minutes between due-message dispatch runs",
    ),
    dispatch_batch_size: int | None = typer.Option(
        None, "--dispatch-batch-size", min=1, help="Messages fetched per batch"
    ),
    attendees_per_page: int | None = typer.Option(
        None, "--attendees-per-page", min=1, help="Default attendee page size"
    ),
    max_attendees_per_page: int | None = typer.Option(
        None, "--max-attendees-per-page", min=1, help="Largest attendee page size"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to rsvpcore.toml (default: ./rsvpcore.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "sqlite_busy_timeout_seconds": sqlite_busy_timeout_seconds,
        "enable_scheduler": enable_scheduler,
        "dispatch_interval_minutes": dispatch_interval_minutes,
        "dispatch_batch_size": dispatch_batch_size,
        "attendees_per_page": attendees_per_page,
        "max_attendees_per_page": max_attendees_per_page,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
