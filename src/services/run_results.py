"""Result types returned by every sync operation."""

from dataclasses import dataclass, field
from typing import Any

from src.errors.formatter import SyncError


@dataclass
class ConnectionRunResult:
    """Outcome of one operation for one connection.

    ``error`` is set only when the connection ended the run in an
    unrecovered state (misconfigured, unreachable, auth rejected, or a whole
    batch failed). Per-item rejections are counted but are not errors.
    """

    connection_id: str
    connection_name: str
    batches: int = 0
    enqueued: int = 0
    exported: int = 0
    skipped: int = 0
    rejected: int = 0
    missing: int = 0
    retried: int = 0
    failed: int = 0
    imported: int = 0
    duplicates: int = 0
    cursor: int | None = None
    skipped_reason: str | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "connection_id": self.connection_id,
            "connection": self.connection_name,
            "batches": self.batches,
            "enqueued": self.enqueued,
            "exported": self.exported,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "missing": self.missing,
            "retried": self.retried,
            "failed": self.failed,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "cursor": self.cursor,
            "skipped_reason": self.skipped_reason,
            "error": None,
        }
        if self.error is not None:
            data["error"] = {
                "code": self.error.code,
                "category": self.error.category.value,
                "message": self.error.message,
            }
        return data


@dataclass
class RunSummary:
    """Outcome of one operation across all connections."""

    operation: str
    started_at: str
    finished_at: str | None = None
    results: list[ConnectionRunResult] = field(default_factory=list)
    totals: dict[str, int] = field(default_factory=dict)
    stopped: bool = False

    @property
    def has_errors(self) -> bool:
        return any(not result.ok for result in self.results)

    @property
    def exit_code(self) -> int:
        """Process exit status: 1 if any connection ended in error."""
        return 1 if self.has_errors else 0

    @property
    def errors(self) -> list[SyncError]:
        return [result.error for result in self.results if result.error is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stopped": self.stopped,
            "exit_code": self.exit_code,
            "totals": dict(self.totals),
            "connections": [result.to_dict() for result in self.results],
        }
