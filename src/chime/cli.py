"""
Operator CLI for chime.

Commands::

    chime run                 Run this replica (leader election + dispatcher)
    chime list [--owner ID]   Show stored reminders, soonest first
    chime lease               Show who currently holds the leader lease
    chime --version

Settings come from ``CHIME_*`` environment variables (see ChimeSettings);
command options override them for a single invocation.
"""

from __future__ import annotations

import json
import signal
from datetime import timedelta
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from chime import __version__
from chime.core.errors import CoordinationUnavailableError, StorageCorruptionError
from chime.core.logging import configure_logging, get_logger
from chime.core.settings import ChimeSettings, get_settings
from chime.leasing.store import RedisCoordinationStore
from chime.reminders.models import ScheduledItem
from chime.reminders.storage import JsonFileStore
from chime.scheduling.sinks import LoggingDeliverySink
from chime.supervisor import ProcessSupervisor

app = typer.Typer(
    name="chime",
    help="chime: leader-elected reminder scheduling.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("chime-core")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"chime {v}")
        raise typer.Exit()


def _load_settings(**overrides: Any) -> ChimeSettings:
    settings = get_settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    return settings.model_copy(update=updates) if updates else settings


def _format_interval(interval: timedelta | None) -> str:
    if interval is None:
        return "-"
    seconds = int(interval.total_seconds())
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"every {seconds // size}{unit}"
    return f"every {seconds}s"


def _print_items(items: list[ScheduledItem]) -> None:
    table = Table(title="Reminders", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Owner")
    table.add_column("Due (UTC)", no_wrap=True)
    table.add_column("Repeat")
    table.add_column("Target")
    table.add_column("Payload", overflow="fold")

    for item in items:
        table.add_row(
            item.id,
            item.owner_id,
            item.due_at.strftime("%Y-%m-%d %H:%M:%S"),
            _format_interval(item.repeat_interval),
            str(item.delivery_target),
            item.payload,
        )
    console.print(table)


# ── Root callback ────────────────────────────────────────────────────────


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """chime CLI: run a replica, inspect reminders and the leader lease."""


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("run")
def run_cmd(
    storage_path: Path | None = typer.Option(None, "--storage", "-s", help="Reminder store file."),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR."),
) -> None:
    """Run this replica until SIGINT/SIGTERM."""
    settings = _load_settings(storage_path=storage_path, log_level=log_level)
    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    supervisor = ProcessSupervisor.from_settings(settings, LoggingDeliverySink())

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("signal_received", signal=signal.Signals(signum).name)
        supervisor.shutdown()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    supervisor.run()


@app.command("list")
def list_cmd(
    owner: str | None = typer.Option(None, "--owner", "-o", help="Only this owner's reminders."),
    storage_path: Path | None = typer.Option(None, "--storage", "-s", help="Reminder store file."),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List stored reminders, soonest first (read-only)."""
    settings = _load_settings(storage_path=storage_path)
    store = JsonFileStore(settings.storage_path)

    try:
        items = store.peek()
    except StorageCorruptionError as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message} ({store.path})")
        raise typer.Exit(code=1) from e

    if owner is not None:
        items = [item for item in items if item.owner_id == owner]
    items.sort(key=lambda item: (item.due_at, item.id))

    if as_json:
        console.print_json(json.dumps([item.to_dict() for item in items]))
        return
    if not items:
        console.print("[dim]No reminders.[/dim]")
        return
    _print_items(items)


@app.command("lease")
def lease_cmd(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the current holder of the leader lease."""
    settings = _load_settings()
    if not settings.redis_url:
        err_console.print("[yellow]No coordination store configured[/yellow] (set CHIME_REDIS_URL).")
        raise typer.Exit(code=1)

    store = RedisCoordinationStore(settings.redis_url)
    try:
        holder = store.get_holder(settings.lease_key)
    except CoordinationUnavailableError as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message}")
        raise typer.Exit(code=1) from e
    finally:
        store.close()

    if as_json:
        console.print_json(json.dumps({"key": settings.lease_key, "holder": holder}))
        return
    if holder is None:
        console.print(f"[dim]No leader[/dim] for [cyan]{settings.lease_key}[/cyan]")
        return
    mine = " (this instance)" if settings.instance_id and holder == settings.instance_id else ""
    console.print(f"[cyan]{settings.lease_key}[/cyan] held by [bold]{holder}[/bold]{mine}")
