"""File path resolution using platformdirs.

Paths default to per-user platform directories so the scheduler daemon,
manual CLI runs and cron-invoked runs all share one state database:
  macOS: ~/Library/Application Support/marketsync/
  Linux: ~/.local/share/marketsync/
  Windows: %LOCALAPPDATA%/marketsync/

MARKETSYNC_HOME overrides the base directory for all of them.
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "marketsync"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, key file)."""
    override = os.environ.get("MARKETSYNC_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_log_dir() -> Path:
    """Return the directory for application log files."""
    override = os.environ.get("MARKETSYNC_HOME", "").strip()
    if override:
        return Path(override).expanduser() / "logs"
    return Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "marketsync.db"


def get_default_pid_file() -> Path:
    """Return the default scheduler daemon PID file path."""
    return get_data_dir() / "scheduler.pid"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir(), get_log_dir()]:
        d.mkdir(parents=True, exist_ok=True)
