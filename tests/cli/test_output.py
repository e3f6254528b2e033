"""Tests for CLI output formatters."""

import json

from src.cli.output import (
    format_connections,
    format_events,
    format_queue_entries,
    format_queue_stats,
    format_run_summary,
)
from src.errors.formatter import SyncError
from src.services.run_results import ConnectionRunResult, RunSummary


def _summary(operation="queued-offer-export", error=None):
    result = ConnectionRunResult(
        connection_id="c1", connection_name="shop-a", batches=1, exported=3, rejected=1, error=error,
    )
    return RunSummary(operation=operation, started_at="2026-03-01T12:00:00.000000Z", results=[result])


class TestRunSummary:

    def test_json(self):
        data = json.loads(format_run_summary(_summary(), as_json=True))
        assert data["exit_code"] == 0
        assert data["connections"][0]["exported"] == 3

    def test_json_includes_error(self):
        error = SyncError.from_code("E-3002", reason="connection refused")
        data = json.loads(format_run_summary(_summary(error=error), as_json=True))
        assert data["exit_code"] == 1
        assert data["connections"][0]["error"]["code"] == "E-3002"

    def test_table(self):
        output = format_run_summary(_summary())
        assert "shop-a" in output
        assert "ok" in output

    def test_table_lists_errors_with_remediation(self):
        error = SyncError.from_code("E-3002", reason="connection refused")
        output = format_run_summary(_summary(error=error))
        assert "Errors" in output
        assert "E-3002" in output
        assert "Action:" in output

    def test_table_without_errors_has_no_error_panel(self):
        assert "Errors" not in format_run_summary(_summary())

    def test_import_table_shows_cursor(self):
        summary = _summary(operation="order-import")
        summary.results[0].imported = 4
        summary.results[0].cursor = 17
        output = format_run_summary(summary)
        assert "Cursor" in output
        assert "17" in output

    def test_no_connections(self):
        summary = RunSummary(operation="order-import", started_at="now")
        assert "No active connections" in format_run_summary(summary)

    def test_clean_logs_totals(self):
        summary = RunSummary(operation="clean-logs", started_at="now", totals={"queue_entries": 4})
        output = format_run_summary(summary)
        assert "queue_entries: 4" in output
        assert "No active connections" not in output

    def test_stopped_run(self):
        summary = _summary()
        summary.stopped = True
        assert "stopped" in format_run_summary(summary)


class TestListings:

    def test_empty_listings(self):
        assert format_queue_stats([]) == "Queue is empty."
        assert format_queue_entries([]) == "No queue entries found."
        assert format_connections([]) == "No connections configured."
        assert format_events([]) == "No events recorded."

    def test_queue_entries_table(self):
        entry = {
            "entity_type": "offer", "entity_id": "42", "status": "failed", "attempt_count": 5,
            "updated_at": "2026-03-01T12:00:00.000000Z", "last_error_code": "E-2001",
            "last_error": "rejected",
        }
        output = format_queue_entries([entry])
        assert "42" in output
        assert "E-2001" in output

    def test_connections_json_round_trips(self):
        rows = [{"id": "abc", "name": "shop-a", "is_active": True}]
        assert json.loads(format_connections(rows, as_json=True)) == rows
