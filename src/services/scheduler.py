"""Interval scheduler for the recurring sync operations.

Each scheduled job runs its operation through ``SyncService.run_operation``,
the same call the CLI uses. Jobs are non-reentrant: when a job comes due
while its previous run is still going, that tick is skipped.

``tick()`` runs due jobs synchronously in the calling thread; ``start()``
runs a background loop that launches each due job on its own thread.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from src.services.run_results import RunSummary
from src.services.sync_service import SyncService

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS: dict[str, float] = {
    "clean-logs": 86400,
    "catalog-export": 86400,
    "queued-offer-export": 300,
    "queued-shipment-export": 300,
    "order-import": 300,
}


@dataclass
class ScheduledJob:
    """One recurring operation.

    Attributes:
        operation: Operation name passed to run_operation.
        interval_seconds: Time between run starts.
        next_run: Monotonic time at which the job is next due.
        last_summary: Summary of the last completed run.
    """

    operation: str
    interval_seconds: float
    next_run: float = 0.0
    last_summary: RunSummary | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_due(self, now: float) -> bool:
        return now >= self.next_run

    @property
    def running(self) -> bool:
        return self._lock.locked()


class Scheduler:
    """Runs scheduled operations at fixed intervals.

    Args:
        service: Operation facade.
        intervals: Operation name -> interval in seconds. Operations with a
            non-positive interval are not scheduled.
        run_immediately: Whether every job is due on the first tick.
        clock: Monotonic clock; injectable for tests.
        stop_event: Shared with the orchestrator so stop() also interrupts
            drains between batches.
    """

    def __init__(
        self,
        service: SyncService,
        intervals: dict[str, float] | None = None,
        run_immediately: bool = True,
        clock: Callable[[], float] = time.monotonic,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._service = service
        self._clock = clock
        self._stop_event = stop_event or threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._job_threads: list[threading.Thread] = []

        start = clock()
        self.jobs: list[ScheduledJob] = [
            ScheduledJob(
                operation=name,
                interval_seconds=interval,
                next_run=start if run_immediately else start + interval,
            )
            for name, interval in (intervals or DEFAULT_INTERVALS).items()
            if interval > 0
        ]

    def due_jobs(self) -> list[ScheduledJob]:
        now = self._clock()
        return [job for job in self.jobs if job.is_due(now)]

    def tick(self) -> list[RunSummary]:
        """Run every due job synchronously.

        Returns:
            Summaries of the jobs that ran (skipped jobs are omitted).
        """
        summaries = []
        for job in self.due_jobs():
            summary = self._run_job(job)
            if summary is not None:
                summaries.append(summary)
        return summaries

    def _claim(self, job: ScheduledJob) -> bool:
        """Take the job's lock and schedule its next run; False if it is running."""
        if not job._lock.acquire(blocking=False):
            logger.info("Skipping %s: previous run still in progress", job.operation)
            return False
        job.next_run = self._clock() + job.interval_seconds
        return True

    def _run_job(self, job: ScheduledJob) -> RunSummary | None:
        if not self._claim(job):
            return None
        return self._execute(job)

    def _execute(self, job: ScheduledJob) -> RunSummary | None:
        # Caller holds job._lock
        try:
            summary = self._service.run_operation(job.operation)
            job.last_summary = summary
            return summary
        except Exception:
            logger.exception("Scheduled %s failed", job.operation)
            return None
        finally:
            job._lock.release()

    # --- Background mode ---

    def start(self, poll_interval: float = 1.0) -> None:
        """Start the background scheduling loop."""
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self._loop, args=(poll_interval,), name="scheduler", daemon=True,
        )
        self._loop_thread.start()
        logger.info(
            "Scheduler started with %d job(s): %s",
            len(self.jobs), ", ".join(job.operation for job in self.jobs),
        )

    def _launch_due_jobs(self) -> list[threading.Thread]:
        """Start a thread for every due job that is not already running.

        The job is claimed here, before its thread starts, so a later poll
        never sees it as idle while the thread is still starting up.
        """
        launched = []
        for job in self.due_jobs():
            if job.running or not self._claim(job):
                continue
            thread = threading.Thread(
                target=self._execute, args=(job,), name=f"job-{job.operation}", daemon=True,
            )
            thread.start()
            launched.append(thread)
        return launched

    def _loop(self, poll_interval: float) -> None:
        while not self._stop_event.is_set():
            self._job_threads = [t for t in self._job_threads if t.is_alive()]
            self._job_threads.extend(self._launch_due_jobs())
            self._stop_event.wait(poll_interval)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop scheduling and wait for running jobs to reach a safe point."""
        self._stop_event.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout)
        for thread in list(self._job_threads):
            thread.join(timeout)
        logger.info("Scheduler stopped")

    def run_forever(self, poll_interval: float = 1.0) -> None:
        """Run the loop in the calling thread until stop() is called."""
        self._stop_event.clear()
        logger.info("Scheduler running in foreground")
        self._loop(poll_interval)
        for thread in list(self._job_threads):
            thread.join()
