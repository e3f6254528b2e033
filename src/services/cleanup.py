"""Retention cleanup (the ``clean-logs`` operation).

Removes settled queue entries, old sync events, and rotated log files once
they pass their retention age. Pending and in-flight entries are never
touched.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from src.db.models import EventType, LogLevel, utc_now_iso
from src.services.run_results import RunSummary
from src.services.sync_event_log import SyncEventLog
from src.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)

OPERATION = "clean-logs"

LOG_FILE_NAME = "marketsync.log"


class CleanupTask:
    """Deletes data older than its retention age.

    Args:
        queue: Work queue (terminal entries are purged).
        events: Sync event log (old events are purged).
        queue_retention_days: Age after which done/failed entries are removed.
        event_retention_days: Age after which sync events are removed.
        log_retention_days: Age after which rotated log files are removed.
        log_dir: Directory holding the log files; None skips file cleanup.
        clock: Returns the current UTC datetime.
    """

    def __init__(
        self,
        queue: WorkQueue,
        events: SyncEventLog,
        queue_retention_days: int = 30,
        event_retention_days: int = 30,
        log_retention_days: int = 30,
        log_dir: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._queue = queue
        self._events = events
        self._queue_retention = timedelta(days=queue_retention_days)
        self._event_retention = timedelta(days=event_retention_days)
        self._log_retention = timedelta(days=log_retention_days)
        self._log_dir = log_dir
        self._clock = clock or (lambda: datetime.now(UTC))

    def run_clean_logs(self) -> RunSummary:
        """Purge expired queue entries, events and log files."""
        summary = RunSummary(operation=OPERATION, started_at=utc_now_iso())
        now = self._clock()

        summary.totals["queue_entries"] = self._queue.purge_terminal(now - self._queue_retention)
        summary.totals["sync_events"] = self._events.purge_before(now - self._event_retention)
        summary.totals["log_files"] = self._purge_log_files(now - self._log_retention)

        summary.finished_at = utc_now_iso()
        logger.info(
            "Cleanup removed %d queue entries, %d events, %d log files",
            summary.totals["queue_entries"], summary.totals["sync_events"],
            summary.totals["log_files"],
        )
        return summary

    def _purge_log_files(self, cutoff: datetime) -> int:
        if self._log_dir is None or not self._log_dir.is_dir():
            return 0

        removed = 0
        # Only rotated files (marketsync.log.1, ...); the active file stays.
        for path in sorted(self._log_dir.glob(f"{LOG_FILE_NAME}.*")):
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, UTC)
            if modified >= cutoff:
                continue
            try:
                path.unlink()
            except OSError as e:
                self._events.log(
                    OPERATION, LogLevel.WARNING, EventType.state_change,
                    f"Could not delete log file {path.name}: {e}",
                )
                continue
            removed += 1
        return removed
