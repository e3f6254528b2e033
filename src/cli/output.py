"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.errors import format_error_summary
from src.services.run_results import RunSummary

console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "in_flight": "blue",
    "done": "green",
    "failed": "red",
    "ok": "green",
    "error": "red",
    "skipped": "dim",
}


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def format_run_summary(summary: RunSummary, as_json: bool = False) -> str:
    """Format an operation's outcome as a Rich table or JSON.

    Args:
        summary: Result of run_operation.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(summary.to_dict(), indent=2)

    if not summary.results:
        lines = [f"[bold]{summary.operation}[/bold] finished"]
        for key, value in summary.totals.items():
            lines.append(f"  {key}: {value}")
        if summary.operation != "clean-logs":
            lines.append("[dim]No active connections.[/dim]")
        return _render(Panel("\n".join(lines), border_style="cyan"))

    importing = summary.operation == "order-import"
    table = Table(title=summary.operation, show_lines=True)
    table.add_column("Connection", style="cyan")
    table.add_column("Status")
    if importing:
        table.add_column("Imported", justify="right", style="green")
        table.add_column("Dup", justify="right")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Cursor", justify="right")
    else:
        table.add_column("Batches", justify="right")
        table.add_column("Exported", justify="right", style="green")
        table.add_column("Rejected", justify="right", style="yellow")
        table.add_column("Missing", justify="right")
        table.add_column("Failed", justify="right", style="red")
    table.add_column("Error")

    for result in summary.results:
        if result.error is not None:
            status = "error"
        elif result.skipped_reason:
            status = "skipped"
        else:
            status = "ok"
        error = f"{result.error.code}: {result.error.message}" if result.error else (
            result.skipped_reason or "—"
        )
        if importing:
            counts = [
                str(result.imported), str(result.duplicates), str(result.failed),
                str(result.cursor) if result.cursor is not None else "—",
            ]
        else:
            counts = [
                str(result.batches), str(result.exported), str(result.rejected),
                str(result.missing), str(result.failed),
            ]
        table.add_row(result.connection_name, _colored(status), *counts, error[:80])

    output = _render(table)
    if summary.errors:
        output += _render(Panel(
            Text(format_error_summary(summary.errors)), title="Errors", border_style="red",
        ))
    if summary.stopped:
        output += "Run was stopped before all work finished.\n"
    return output


def format_queue_stats(rows: list[dict[str, Any]], as_json: bool = False) -> str:
    """Format queue counts per connection, entity type, and status."""
    if as_json:
        return json.dumps(rows, indent=2)
    if not rows:
        return "Queue is empty."

    table = Table(title="Work Queue")
    table.add_column("Connection", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for row in rows:
        table.add_row(row["connection"], row["entity_type"], _colored(row["status"]), str(row["count"]))
    return _render(table)


def format_queue_entries(entries: list[dict[str, Any]], as_json: bool = False) -> str:
    """Format individual queue entries."""
    if as_json:
        return json.dumps(entries, indent=2)
    if not entries:
        return "No queue entries found."

    table = Table(title="Queue Entries", show_lines=True)
    table.add_column("Type")
    table.add_column("Entity", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Updated")
    table.add_column("Last Error")
    for entry in entries:
        table.add_row(
            entry["entity_type"],
            entry["entity_id"],
            _colored(entry["status"]),
            str(entry["attempt_count"]),
            entry["updated_at"][:19],
            f"{entry['last_error_code']}: {entry['last_error'][:40]}"
            if entry["last_error_code"] else "—",
        )
    return _render(table)


def format_connections(connections: list[dict[str, Any]], as_json: bool = False) -> str:
    """Format configured connections (never shows credentials)."""
    if as_json:
        return json.dumps(connections, indent=2)
    if not connections:
        return "No connections configured."

    table = Table(title="Connections")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Active")
    table.add_column("Base URL")
    table.add_column("Updated")
    for connection in connections:
        table.add_row(
            connection["id"][:8],
            connection["name"],
            "[green]yes[/green]" if connection["is_active"] else "[dim]no[/dim]",
            connection["base_url"] or "(default)",
            connection["updated_at"][:19],
        )
    return _render(table)


def format_events(events: list[dict[str, Any]], as_json: bool = False) -> str:
    """Format recent sync events."""
    if as_json:
        return json.dumps(events, indent=2)
    if not events:
        return "No events recorded."

    table = Table(title="Sync Events")
    table.add_column("Time")
    table.add_column("Level")
    table.add_column("Operation")
    table.add_column("Code")
    table.add_column("Message")
    level_colors = {"INFO": "white", "WARNING": "yellow", "ERROR": "red"}
    for event in events:
        color = level_colors.get(event["level"], "white")
        table.add_row(
            event["timestamp"][:19],
            f"[{color}]{event['level']}[/{color}]",
            event["operation"],
            event["error_code"] or "—",
            event["message"][:80],
        )
    return _render(table)
