"""Command-line interface for the mail auto-reply service.

Provides commands for configuration validation, runs, the server, and the
log and processed-message ledgers.

Usage:
    python -m autoreply validate-config
    python -m autoreply run --once
    python -m autoreply logs --level ERROR
    python -m autoreply serve
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from autoreply.config import validate_config_file
from autoreply.core.logging import configure_logging

if TYPE_CHECKING:
    from autoreply.config_schema import AppConfig
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore
    from autoreply.engine.coordinator import RunSummary

console = Console()

LEVEL_STYLES = {"INFO": "cyan", "WARNING": "yellow", "ERROR": "red"}


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    ledger: LogLedger
    store: DatabaseStore


def _load_config_or_exit() -> AppConfig:
    from autoreply.config import get_config
    from autoreply.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml (see config/config.yaml.example) "
            "or set AUTOREPLY_CONFIG_PATH."
        )
        sys.exit(1)


def _open_ledger(config: AppConfig) -> LogLedger:
    from autoreply.core.ledger import LogLedger

    return LogLedger(config.log_ledger.path, max_entries=config.log_ledger.max_entries)


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, opens the log ledger and initializes the database.
    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from autoreply.db.store import DatabaseStore

    config = _load_config_or_exit()
    ledger = _open_ledger(config)

    store = DatabaseStore(config.database.path)
    await store.initialize()

    return CLIDeps(config=config, ledger=ledger, store=store)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Mail auto-reply - answer unseen messages with a configured reply."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the run scheduler and the JSON API server."""
    import uvicorn

    from autoreply.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This API has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("run")
@click.option(
    "--once",
    is_flag=True,
    help="Process all active accounts once and exit",
)
def run(once: bool) -> None:
    """Process mailboxes.

    Without --once, starts the scheduler for continuous operation.
    With --once, runs a single manual run and exits.
    """
    if once:
        try:
            summary = asyncio.run(_run_once())
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelled.[/yellow]")
            sys.exit(130)
        except SystemExit:
            raise
        except Exception as e:
            console.print(f"\n[red]Error:[/red] {e}")
            sys.exit(1)
        sys.exit(0 if summary.success else 1)
    else:
        console.print("Starting continuous mode (use 'serve' for API + scheduler)...")
        try:
            asyncio.run(_run_continuous())
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopped.[/yellow]")
            sys.exit(0)
        except SystemExit:
            raise
        except Exception as e:
            console.print(f"\n[red]Error:[/red] {e}")
            sys.exit(1)


def _print_summary(summary: RunSummary) -> None:
    status = "[green]success[/green]" if summary.success else "[red]failed[/red]"
    console.print(f"\n[bold]Run Summary[/bold] (run {summary.run_id[:8]}...) {status}")
    console.print(f"  {summary.message}")
    console.print(f"  Duration:        {summary.duration_ms}ms")
    console.print(f"  Accounts:        {summary.accounts_total}")
    console.print(f"  Accounts failed: {summary.accounts_failed}")
    console.print(f"  Replies sent:    {summary.replies_sent}")
    if summary.error:
        console.print(f"  [red]Error:[/red] {summary.error}")


async def _run_once() -> RunSummary:
    """Run all accounts once and print the summary."""
    from autoreply.engine.triggers import run_manual

    deps = await _init_cli_deps()
    try:
        summary = await run_manual(deps.config, deps.store, deps.ledger)
    finally:
        deps.ledger.close()

    _print_summary(summary)
    return summary


async def _run_continuous() -> None:
    """Run on the configured interval with APScheduler until interrupted."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from autoreply.config import get_config, reload_config_if_changed
    from autoreply.engine.triggers import run_scheduled

    deps = await _init_cli_deps()

    async def run_cycle():
        config = get_config() if reload_config_if_changed() else deps.config
        summary = await run_scheduled(config, deps.store, deps.ledger)
        console.print(
            f"[dim]Run {summary.run_id[:8]}...[/dim] "
            f"accounts={summary.accounts_total} failed={summary.accounts_failed} "
            f"replies={summary.replies_sent} ({summary.duration_ms}ms)"
        )

    interval = deps.config.schedule.interval_minutes
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_cycle,
        "interval",
        minutes=interval,
        id="process_emails",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(f"Polling every {interval} minutes. Press Ctrl+C to stop.")

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)
    deps.ledger.close()


@cli.command("logs")
@click.option(
    "--level",
    type=click.Choice(["INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Only entries of this level",
)
@click.option("--account", default=None, help="Only entries for this email address")
@click.option("--limit", type=int, default=50, show_default=True, help="Most recent N entries")
def logs(level: str | None, account: str | None, limit: int) -> None:
    """Show log ledger entries, most recent first.

    Filters are exclusive in the same order as the API: --level, then
    --account, then --limit.
    """
    config = _load_config_or_exit()
    ledger = _open_ledger(config)
    try:
        if level:
            entries = ledger.by_level(level)
        elif account:
            entries = ledger.by_account(account)
        else:
            entries = ledger.recent(limit)
    finally:
        ledger.close()

    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return

    table = Table(title=f"Log ledger ({len(entries)} entries)")
    table.add_column("ID", justify="right")
    table.add_column("Time")
    table.add_column("Level")
    table.add_column("Account")
    table.add_column("Message")
    for entry in entries:
        style = LEVEL_STYLES.get(entry.level, "white")
        table.add_row(
            str(entry.id),
            entry.created_at,
            f"[{style}]{entry.level}[/{style}]",
            entry.email_account or "",
            entry.message,
        )
    console.print(table)


@cli.command("clear-logs")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
def clear_logs(yes: bool) -> None:
    """Delete every log ledger entry and the ledger file."""
    from autoreply.core.errors import LedgerError

    if not yes:
        click.confirm("Delete all log entries? This cannot be undone", abort=True)

    config = _load_config_or_exit()
    ledger = _open_ledger(config)
    try:
        ledger.clear()
    except LedgerError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        ledger.close()

    console.print("[green]✓[/green] Log ledger cleared")


@cli.command("processed")
@click.option("--account", default=None, help="Only records for this email address")
@click.option("--limit", type=int, default=50, show_default=True, help="Maximum rows")
def processed(account: str | None, limit: int) -> None:
    """List messages that have been replied to, most recent first."""
    try:
        total, records = asyncio.run(_list_processed(account, limit))
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)

    if not records:
        console.print("[dim]No processed messages.[/dim]")
        return

    table = Table(title=f"Processed messages ({len(records)} of {total})")
    table.add_column("Processed at")
    table.add_column("Account")
    table.add_column("Sender")
    table.add_column("Subject")
    table.add_column("Message-ID", overflow="fold")
    for record in records:
        table.add_row(
            record.processed_at.isoformat(timespec="seconds"),
            record.email_account,
            record.sender or "",
            record.subject or "",
            record.message_id,
        )
    console.print(table)


async def _list_processed(account: str | None, limit: int):
    from autoreply.db.store import DatabaseStore

    config = _load_config_or_exit()
    store = DatabaseStore(config.database.path)
    await store.initialize()
    total = await store.count_processed(account)
    records = await store.list_processed(email_account=account, limit=limit)
    return total, records


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
