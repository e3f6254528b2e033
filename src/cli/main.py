"""MarketSync CLI: manual trigger surface and scheduler control.

Every sync operation can be run on demand; the scheduler runs the recurring
ones through the same code path.

Usage:
    marketsync queued-offer-export          Drain queued stock/price updates
    marketsync catalog-export --full        Re-send the whole catalog
    marketsync order-import --json          Import new marketplace orders
    marketsync scheduler start              Run the scheduler in the foreground
    marketsync connections add --name shop  Register a marketplace connection
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console

from src.cli.config import MarketSyncConfig, configure_logging, load_config
from src.cli.factory import (
    HostStoreNotConfiguredError,
    SyncContext,
    build_cleanup_task,
    build_context,
    build_queue,
    open_database,
)
from src.cli.output import (
    format_connections,
    format_events,
    format_queue_entries,
    format_queue_stats,
    format_run_summary,
)
from src.db.models import EntryStatus, LogLevel
from src.errors.domain import DomainError
from src.services.connection_service import ConnectionService
from src.services.connection_types import ConnectionValidationError
from src.services.credential_encryption import get_or_create_key
from src.services.host_store import HostStoreLoadError
from src.services.run_results import RunSummary
from src.services.sync_event_log import SyncEventLog
from src.utils.paths import ensure_dirs_exist, get_default_pid_file, get_log_dir

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="marketsync",
    help="Marketplace catalog, shipment and order synchronization",
    no_args_is_help=True,
)
scheduler_app = typer.Typer(help="Run and control the scheduler")
queue_app = typer.Typer(help="Inspect the work queues")
connections_app = typer.Typer(help="Manage marketplace connections")
notify_app = typer.Typer(help="Signal changed host-store entities")
events_app = typer.Typer(help="Inspect the sync event log")

app.add_typer(scheduler_app, name="scheduler")
app.add_typer(queue_app, name="queue")
app.add_typer(connections_app, name="connections")
app.add_typer(notify_app, name="notify")
app.add_typer(events_app, name="events")

console = Console()

# --- Global state ---
_config_path: str | None = None
_verbose: bool = False


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to marketsync.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """MarketSync: keep marketplace connections in sync with the store."""
    global _config_path, _verbose
    _config_path = config
    _verbose = verbose


def _load() -> MarketSyncConfig:
    """Load config and set up logging, exiting 1 on invalid config."""
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except PydanticValidationError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    if _verbose:
        cfg.logging.level = "DEBUG"
    ensure_dirs_exist()
    configure_logging(cfg.logging, get_log_dir() if cfg.logging.file else None)
    return cfg


def _context(cfg: MarketSyncConfig) -> SyncContext:
    try:
        return build_context(cfg)
    except (HostStoreNotConfiguredError, HostStoreLoadError) as e:
        console.print(f"[red]Host store unavailable:[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Credential key error:[/red] {e}")
        raise typer.Exit(1)


def _finish(summary: RunSummary, json_output: bool) -> None:
    typer.echo(format_run_summary(summary, as_json=json_output))
    if summary.exit_code:
        raise typer.Exit(summary.exit_code)


def _run_operation(
    name: str, json_output: bool, full: bool = False, connection: str | None = None,
) -> None:
    cfg = _load()
    ctx = _context(cfg)
    try:
        summary = ctx.service.run_operation(name, full=full, connection=connection)
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        ctx.close()
    _finish(summary, json_output)


# --- Operations ---

_CONNECTION_OPTION = typer.Option(
    None, "--connection", "-c", help="Run for one connection (id or name) only"
)


@app.command("init-db")
def init_db_cmd():
    """Create the state database and its tables."""
    cfg = _load()
    database = open_database(cfg)
    database.dispose()
    console.print(f"[green]Database ready:[/green] {database.url}")


@app.command("clean-logs")
def clean_logs_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Remove settled queue entries, old events and rotated log files."""
    cfg = _load()
    database = open_database(cfg)
    try:
        task = build_cleanup_task(cfg, build_queue(cfg, database), SyncEventLog(database))
        summary = task.run_clean_logs()
    finally:
        database.dispose()
    _finish(summary, json_output)


@app.command("catalog-export")
def catalog_export_cmd(
    connection: Optional[str] = _CONNECTION_OPTION,
    full: bool = typer.Option(False, "--full", help="Re-send every in-scope offer"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Send full product content for queued offers."""
    _run_operation("catalog-export", json_output, full=full, connection=connection)


@app.command("queued-offer-export")
def queued_offer_export_cmd(
    connection: Optional[str] = _CONNECTION_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Send stock/price updates for queued offers."""
    _run_operation("queued-offer-export", json_output, connection=connection)


@app.command("queued-shipment-export")
def queued_shipment_export_cmd(
    connection: Optional[str] = _CONNECTION_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Send tracking information for queued shipments."""
    _run_operation("queued-shipment-export", json_output, connection=connection)


@app.command("full-offer-export")
def full_offer_export_cmd(
    connection: Optional[str] = _CONNECTION_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Queue and send stock/price for every in-scope offer."""
    _run_operation("full-offer-export", json_output, connection=connection)


@app.command("order-import")
def order_import_cmd(
    connection: Optional[str] = _CONNECTION_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Import new marketplace orders into the host store."""
    _run_operation("order-import", json_output, connection=connection)


# --- Scheduler commands ---


def _pid_file(cfg: MarketSyncConfig) -> Path:
    if cfg.scheduler.pid_file:
        return Path(cfg.scheduler.pid_file).expanduser()
    return get_default_pid_file()


@scheduler_app.command("start")
def scheduler_start_cmd():
    """Run the scheduler in the foreground until stopped."""
    from src.cli.daemon import DaemonAlreadyRunningError, run_daemon

    cfg = _load()
    ctx = _context(cfg)
    scheduler = ctx.scheduler()
    console.print(
        "[bold]Starting scheduler:[/bold] "
        + ", ".join(f"{job.operation} every {job.interval_seconds:g}s" for job in scheduler.jobs)
    )
    try:
        run_daemon(scheduler, _pid_file(cfg), poll_interval=cfg.scheduler.poll_interval)
    except DaemonAlreadyRunningError as e:
        console.print(f"[red]{e}.[/red] Use 'marketsync scheduler stop' first.")
        raise typer.Exit(1)
    finally:
        ctx.close()


@scheduler_app.command("stop")
def scheduler_stop_cmd():
    """Stop a running scheduler."""
    from src.cli.daemon import stop_daemon

    cfg = _load()
    if stop_daemon(_pid_file(cfg)):
        console.print("[green]Scheduler stopped.[/green]")
    else:
        console.print("[yellow]Scheduler is not running.[/yellow]")


@scheduler_app.command("status")
def scheduler_status_cmd():
    """Check whether the scheduler is running."""
    from src.cli.daemon import daemon_status

    cfg = _load()
    status = daemon_status(_pid_file(cfg))
    if status["alive"]:
        console.print(f"[green]Scheduler running[/green] (PID {status['pid']})")
    else:
        console.print("[red]Scheduler not running[/red]")


@scheduler_app.command("tick")
def scheduler_tick_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run every scheduled operation once (e.g. from cron)."""
    cfg = _load()
    ctx = _context(cfg)
    try:
        summaries = ctx.scheduler().tick()
    finally:
        ctx.close()

    if json_output:
        typer.echo(json.dumps([s.to_dict() for s in summaries], indent=2))
    else:
        for summary in summaries:
            typer.echo(format_run_summary(summary))
    if any(summary.exit_code for summary in summaries):
        raise typer.Exit(1)


# --- Queue commands ---


@queue_app.command("stats")
def queue_stats_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show entry counts per connection, type and status."""
    cfg = _load()
    database = open_database(cfg)
    try:
        rows = build_queue(cfg, database).stats()
    finally:
        database.dispose()
    typer.echo(format_queue_stats(rows, as_json=json_output))


@queue_app.command("list")
def queue_list_cmd(
    connection: Optional[str] = typer.Option(None, "--connection", "-c", help="Connection id"),
    entity_type: Optional[str] = typer.Option(None, "--type", "-t", help="offer, catalog or shipment"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List queue entries, most recently updated first."""
    if status is not None and status not in {s.value for s in EntryStatus}:
        console.print(f"[red]Unknown status '{status}'[/red]")
        raise typer.Exit(1)
    cfg = _load()
    database = open_database(cfg)
    try:
        entries = build_queue(cfg, database).list_entries(
            connection_id=connection, entity_type=entity_type, status=status, limit=limit,
        )
    finally:
        database.dispose()
    typer.echo(format_queue_entries(entries, as_json=json_output))


# --- Notify commands ---


@notify_app.command("offer")
def notify_offer_cmd(offer_ids: list[str] = typer.Argument(..., help="Changed offer ids")):
    """Queue changed offers for every in-scope connection."""
    cfg = _load()
    ctx = _context(cfg)
    try:
        watcher = ctx.offer_watcher()
        for offer_id in offer_ids:
            queued = watcher.notify(offer_id)
            console.print(f"offer {offer_id}: queued for {len(queued)} connection(s)")
    finally:
        ctx.close()


@notify_app.command("shipment")
def notify_shipment_cmd(shipment_ids: list[str] = typer.Argument(..., help="Changed shipment ids")):
    """Queue changed shipments for their originating connection."""
    cfg = _load()
    ctx = _context(cfg)
    try:
        watcher = ctx.shipment_watcher()
        for shipment_id in shipment_ids:
            queued = watcher.notify(shipment_id)
            console.print(f"shipment {shipment_id}: queued for {len(queued)} connection(s)")
    finally:
        ctx.close()


# --- Connection commands ---


def _parse_settings(raw: str | None) -> dict | None:
    if raw is None:
        return None
    path = Path(raw)
    text = path.read_text() if path.is_file() else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        console.print(f"[red]Settings are not valid JSON:[/red] {e}")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        console.print("[red]Settings must be a JSON object[/red]")
        raise typer.Exit(1)
    return data


def _connection_service(cfg: MarketSyncConfig):
    database = open_database(cfg)
    try:
        key = get_or_create_key()
    except ValueError as e:
        database.dispose()
        console.print(f"[red]Credential key error:[/red] {e}")
        raise typer.Exit(1)
    return database, database.new_session(), key


@connections_app.command("list")
def connections_list_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List configured connections (credentials are never shown)."""
    cfg = _load()
    database, session, key = _connection_service(cfg)
    try:
        connections = ConnectionService(session, key=key).list_all()
    finally:
        session.close()
        database.dispose()
    typer.echo(format_connections(connections, as_json=json_output))


@connections_app.command("add")
def connections_add_cmd(
    name: str = typer.Option(..., "--name", "-n", help="Unique connection name"),
    public_key: str = typer.Option(..., "--public-key", prompt=True, help="API public key"),
    secret_key: str = typer.Option(
        ..., "--secret-key", prompt=True, hide_input=True, help="API secret key"
    ),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="API base URL override"),
    settings: Optional[str] = typer.Option(
        None, "--settings", help="Export settings as JSON or a path to a JSON file"
    ),
    active: bool = typer.Option(False, "--active/--inactive", help="Drain immediately"),
):
    """Register a marketplace connection."""
    cfg = _load()
    parsed_settings = _parse_settings(settings)
    database, session, key = _connection_service(cfg)
    try:
        created = ConnectionService(session, key=key).create(
            name=name,
            credentials={"public_key": public_key, "secret_key": secret_key},
            settings=parsed_settings,
            active=active,
            base_url=base_url,
        )
    except (ConnectionValidationError, DomainError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        session.close()
        database.dispose()
    console.print(f"[green]Created connection {created['name']}[/green] ({created['id']})")
    if active:
        console.print("Run 'marketsync full-offer-export' for the first synchronization.")


def _set_active(connection: str, active: bool) -> None:
    cfg = _load()
    database, session, key = _connection_service(cfg)
    try:
        updated = ConnectionService(session, key=key).set_active(connection, active)
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        session.close()
        database.dispose()
    state = "activated" if active else "deactivated"
    console.print(f"[green]Connection {updated['name']} {state}[/green]")


@connections_app.command("activate")
def connections_activate_cmd(connection: str = typer.Argument(..., help="Connection id or name")):
    """Start draining a connection."""
    _set_active(connection, True)


@connections_app.command("deactivate")
def connections_deactivate_cmd(connection: str = typer.Argument(..., help="Connection id or name")):
    """Stop draining a connection; its queued work is kept."""
    _set_active(connection, False)


@connections_app.command("set-settings")
def connections_set_settings_cmd(
    connection: str = typer.Argument(..., help="Connection id or name"),
    settings: str = typer.Argument(..., help="Export settings as JSON or a path to a JSON file"),
):
    """Replace a connection's export settings."""
    cfg = _load()
    parsed = _parse_settings(settings) or {}
    database, session, key = _connection_service(cfg)
    try:
        ConnectionService(session, key=key).update_settings(connection, parsed)
    except (ConnectionValidationError, DomainError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        session.close()
        database.dispose()
    console.print("[green]Settings updated[/green]")


@connections_app.command("delete")
def connections_delete_cmd(
    connection: str = typer.Argument(..., help="Connection id or name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a connection with its queue entries and import cursor."""
    from rich.prompt import Confirm

    if not yes and not Confirm.ask(f"Delete connection {connection}?"):
        console.print("[dim]Cancelled[/dim]")
        return
    cfg = _load()
    database, session, key = _connection_service(cfg)
    try:
        ConnectionService(session, key=key).delete(connection)
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        session.close()
        database.dispose()
    console.print(f"[green]Deleted connection {connection}[/green]")


# --- Event commands ---


@events_app.command("list")
def events_list_cmd(
    connection: Optional[str] = typer.Option(None, "--connection", "-c", help="Connection id"),
    level: Optional[str] = typer.Option(None, "--level", "-l", help="INFO, WARNING or ERROR"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum events"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show recent sync events, newest first."""
    try:
        parsed_level = LogLevel(level.upper()) if level else None
    except ValueError:
        console.print(f"[red]Unknown level '{level}'[/red]")
        raise typer.Exit(1)
    cfg = _load()
    database = open_database(cfg)
    try:
        events = SyncEventLog(database).recent(
            connection_id=connection, level=parsed_level, limit=limit,
        )
    finally:
        database.dispose()
    typer.echo(format_events(events, as_json=json_output))


if __name__ == "__main__":
    app()
