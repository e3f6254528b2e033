"""Scheduler daemon management: start, stop, status.

Runs the scheduler in the foreground of the current process with PID file
management, so ``marketsync scheduler stop`` can signal it from another
shell and a second start is refused while one is alive.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from types import FrameType

from src.services.scheduler import Scheduler

logger = logging.getLogger(__name__)


class DaemonAlreadyRunningError(Exception):
    """A live scheduler already owns the PID file."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Scheduler already running (PID {pid})")
        self.pid = pid


def write_pid_file(pid_file: str | Path, pid: int) -> None:
    """Write a PID to a file, creating parent dirs if needed."""
    path = Path(pid_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid))


def read_pid_file(pid_file: str | Path) -> int | None:
    """Read PID from a file.

    Returns:
        The PID as int, or None if file doesn't exist or is invalid.
    """
    path = Path(pid_file).expanduser()
    if not path.exists():
        return None
    try:
        return int(path.read_text().strip())
    except (ValueError, OSError):
        return None


def remove_pid_file(pid_file: str | Path) -> None:
    """Remove the PID file. No-op if it doesn't exist."""
    Path(pid_file).expanduser().unlink(missing_ok=True)


def is_pid_alive(pid: int) -> bool:
    """Check if a scheduler process with the given PID is running.

    Uses os.kill(pid, 0) for existence, then verifies the command line
    mentions marketsync so a reused PID is not mistaken for the scheduler.
    """
    try:
        os.kill(pid, 0)
    except (OSError, ProcessLookupError):
        return False

    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True, text=True, timeout=2,
        )
    except (OSError, subprocess.SubprocessError):
        # No ps available; existence check only
        return True
    cmdline = result.stdout.strip().lower()
    return "marketsync" in cmdline or "src.cli.main" in cmdline


def run_daemon(scheduler: Scheduler, pid_file: str | Path, poll_interval: float = 1.0) -> None:
    """Run the scheduler in the foreground until SIGTERM/SIGINT.

    Raises:
        DaemonAlreadyRunningError: If another live scheduler holds the PID file.
    """
    existing_pid = read_pid_file(pid_file)
    if existing_pid is not None:
        if is_pid_alive(existing_pid):
            raise DaemonAlreadyRunningError(existing_pid)
        logger.warning("Removing stale PID file (PID %d no longer running)", existing_pid)
        remove_pid_file(pid_file)

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal %d, stopping scheduler", signum)
        scheduler.stop(timeout=0)

    write_pid_file(pid_file, os.getpid())
    previous = {
        sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)
    }
    logger.info("Scheduler daemon started (PID %d)", os.getpid())
    try:
        scheduler.run_forever(poll_interval)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        remove_pid_file(pid_file)


def stop_daemon(pid_file: str | Path, wait_seconds: float = 30.0) -> bool:
    """Stop the scheduler daemon by sending SIGTERM.

    Returns:
        True if a running scheduler was signalled, False if none was running.
    """
    pid = read_pid_file(pid_file)
    if pid is None:
        logger.info("No PID file found; scheduler may not be running")
        return False

    if not is_pid_alive(pid):
        logger.warning("PID %d not running; cleaning up stale PID file", pid)
        remove_pid_file(pid_file)
        return False

    logger.info("Sending SIGTERM to scheduler (PID %d)", pid)
    os.kill(pid, signal.SIGTERM)

    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        time.sleep(0.5)
        try:
            os.kill(pid, 0)
        except (OSError, ProcessLookupError):
            break

    remove_pid_file(pid_file)
    return True


def daemon_status(pid_file: str | Path) -> dict:
    """Return {"pid", "alive"} for the scheduler daemon."""
    pid = read_pid_file(pid_file)
    return {"pid": pid, "alive": pid is not None and is_pid_alive(pid)}
