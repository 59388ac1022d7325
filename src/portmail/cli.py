# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for PortMail.

This module provides a CLI for operating the service without going
through the HTTP API. ``portmail sweep`` is the entry point for system
cron: it runs exactly the same sweep as the ``/cron/send-mails`` route.

Usage:
    portmail serve --port 8000
    portmail sweep
    portmail sweep --json
    portmail init-db
    portmail jobs list --status failed
    portmail jobs retry 3f2a...
    portmail ships add "MV AURORA" --email master@aurora.example --imo 9876543

Example:
    Crontab line delivering due emails every minute::

        * * * * * PM_CONFIG=/etc/portmail/config.ini portmail sweep
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .config_loader import ServiceConfig, load_config
from .core import PortMailService
from .errors import ConfigurationError, PortMailError
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)

JOB_STATUSES = ["pending", "processing", "sent", "failed", "cancelled", "all"]
STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "sent": "green",
    "failed": "red",
    "cancelled": "dim",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _service(ctx: click.Context) -> PortMailService:
    return PortMailService(ctx.obj)


def _command(ctx: click.Context, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Run one service command, exiting with status 1 on failure."""
    service = _service(ctx)

    async def _run():
        await service.init()
        try:
            return await service.handle_command(cmd, payload)
        finally:
            await service.stop()

    try:
        result = run_async(_run())
    except PortMailError as exc:
        print_error(str(exc))
        sys.exit(1)
    if not result.get("ok"):
        print_error(str(result.get("error")))
        sys.exit(1)
    return result


@click.group()
@click.version_option(package_name="portmail")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="INI configuration file (default: $PM_CONFIG or config.ini).")
@click.option("--db", "db_path", default=None, help="SQLite database path, overrides the configuration.")
@click.option("--log-level", default=None, help="Logging level (default: $PM_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """PortMail - scheduled email delivery for ship agencies."""
    configure_logging(log_level)
    try:
        config: ServiceConfig = load_config(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)
    if db_path:
        config.storage.db_path = db_path
    ctx.obj = config
    ctx.meta["config_path"] = config_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from configuration).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from configuration).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    config: ServiceConfig = ctx.obj
    # the ASGI module rebuilds its configuration from the environment
    if ctx.meta.get("config_path"):
        os.environ["PM_CONFIG"] = ctx.meta["config_path"]
    os.environ["PM_DB_PATH"] = config.storage.db_path
    host = host or config.host
    port = port or config.port
    console.print(f"[bold cyan]Starting PortMail on {host}:{port} ({config.environment})[/bold cyan]")
    uvicorn.run("portmail.server:app", host=host, port=port, reload=reload)


@main.command("sweep")
@click.option("--json", "as_json", is_flag=True, help="Output the sweep report as JSON.")
@click.pass_context
def sweep(ctx: click.Context, as_json: bool) -> None:
    """Deliver every job that is due now (for system cron)."""
    service = _service(ctx)

    async def _sweep():
        await service.init()
        try:
            return await service.run_sweep(trigger="cli")
        finally:
            await service.stop()

    try:
        report = run_async(_sweep())
    except PortMailError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json({**report.to_response(), "skipped": report.skipped})
        return

    console.print(f"[bold]{report.message}[/bold]")
    console.print(f"  Processed: {report.processed}")
    console.print(f"  Sent:      [green]{report.sent}[/green]")
    console.print(f"  Failed:    [red]{report.failed}[/red]")
    if report.skipped:
        console.print(f"  Skipped:   [yellow]{report.skipped}[/yellow] (claimed by another sweep)")
    for err in report.errors:
        console.print(f"  [red]✗[/red] {err.job_id}: {err.error}")


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    run_async(_service(ctx).init())
    print_success(f"Database ready at {ctx.obj.storage.db_path}")


@main.group("jobs")
def jobs() -> None:
    """Inspect and manage scheduled jobs."""


@jobs.command("list")
@click.option("--status", "-s", type=click.Choice(JOB_STATUSES), default="all", help="Filter by status.")
@click.option("--user", "-u", "user_id", default=None, help="Only jobs owned by this user.")
@click.option("--limit", "-n", type=int, default=50, help="Maximum number of jobs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_list(ctx: click.Context, status: str, user_id: str | None, limit: int, as_json: bool) -> None:
    """List scheduled jobs, latest schedule first."""
    result = _command(ctx, "listJobs", {"status": status, "user_id": user_id, "limit": limit})
    job_list = result["jobs"]

    if as_json:
        print_json(job_list)
        return

    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Scheduled jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Ship")
    table.add_column("To")
    table.add_column("Scheduled (UTC)")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Error")

    for job in job_list:
        style = STATUS_STYLES.get(job["status"], "white")
        table.add_row(
            job["id"],
            job["ship_name"],
            job["target_email"],
            job["scheduled_time"],
            f"[{style}]{job['status']}[/{style}]",
            str(job["retry_count"]),
            (job.get("error_log") or "-")[:60],
        )

    console.print(table)


@jobs.command("cancel")
@click.argument("job_id")
@click.pass_context
def jobs_cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a pending job."""
    _command(ctx, "cancelJob", {"id": job_id})
    print_success(f"Job '{job_id}' cancelled")


@jobs.command("retry")
@click.argument("job_id")
@click.pass_context
def jobs_retry(ctx: click.Context, job_id: str) -> None:
    """Put a failed job back in the queue."""
    _command(ctx, "retryJob", {"id": job_id})
    print_success(f"Job '{job_id}' queued for retry")


@main.group("ships")
def ships() -> None:
    """Manage ship reference data."""


@ships.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def ships_list(ctx: click.Context, as_json: bool) -> None:
    """List registered ships."""
    ship_list = _command(ctx, "listShips")["ships"]

    if as_json:
        print_json(ship_list)
        return

    if not ship_list:
        console.print("[dim]No ships found.[/dim]")
        return

    table = Table(title="Ships")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("IMO")
    table.add_column("Email")
    table.add_column("Flag")

    for ship in ship_list:
        table.add_row(
            ship["id"],
            ship["name"],
            ship.get("imo_number") or "-",
            ship["default_email"],
            ship.get("flag_country") or "-",
        )

    console.print(table)


@ships.command("add")
@click.argument("name")
@click.option("--email", "-e", "default_email", required=True, help="Default recipient address.")
@click.option("--imo", "imo_number", default=None, help="IMO number.")
@click.option("--type", "vessel_type", default=None, help="Vessel type.")
@click.option("--flag", "flag_country", default=None, help="Flag country.")
@click.option("--notes", default=None, help="Free-text notes.")
@click.pass_context
def ships_add(
    ctx: click.Context,
    name: str,
    default_email: str,
    imo_number: str | None,
    vessel_type: str | None,
    flag_country: str | None,
    notes: str | None,
) -> None:
    """Register a ship."""
    result = _command(
        ctx,
        "addShip",
        {
            "name": name,
            "default_email": default_email,
            "imo_number": imo_number,
            "vessel_type": vessel_type,
            "flag_country": flag_country,
            "notes": notes,
        },
    )
    print_success(f"Ship '{name}' added ({result['ship']['id']})")


if __name__ == "__main__":
    main()
