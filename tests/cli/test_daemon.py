"""Tests for scheduler daemon PID management."""

import os
from unittest.mock import patch

import pytest

from src.cli.daemon import (
    DaemonAlreadyRunningError,
    daemon_status,
    is_pid_alive,
    read_pid_file,
    remove_pid_file,
    run_daemon,
    stop_daemon,
    write_pid_file,
)


def _ps(command):
    return type("Result", (), {"stdout": command})()


class TestPidFile:
    """Tests for PID file read/write/cleanup."""

    def test_write_and_read(self, tmp_path):
        pid_file = tmp_path / "test.pid"
        write_pid_file(pid_file, 12345)
        assert read_pid_file(pid_file) == 12345

    def test_read_missing_file(self, tmp_path):
        assert read_pid_file(tmp_path / "missing.pid") is None

    def test_read_garbage(self, tmp_path):
        pid_file = tmp_path / "bad.pid"
        pid_file.write_text("not a pid")
        assert read_pid_file(pid_file) is None

    def test_remove_pid_file(self, tmp_path):
        pid_file = tmp_path / "test.pid"
        write_pid_file(pid_file, 12345)
        remove_pid_file(pid_file)
        remove_pid_file(pid_file)
        assert read_pid_file(pid_file) is None

    def test_write_creates_parent_dirs(self, tmp_path):
        pid_file = tmp_path / "nested" / "dir" / "test.pid"
        write_pid_file(pid_file, 12345)
        assert read_pid_file(pid_file) == 12345


class TestIsPidAlive:

    def test_scheduler_process(self):
        with patch("subprocess.run", return_value=_ps("/usr/bin/python -m marketsync scheduler start")):
            assert is_pid_alive(os.getpid()) is True

    def test_reused_pid(self):
        with patch("subprocess.run", return_value=_ps("/usr/sbin/sshd")):
            assert is_pid_alive(os.getpid()) is False

    def test_nonexistent(self):
        with patch("os.kill", side_effect=ProcessLookupError):
            assert is_pid_alive(999999) is False


class TestDaemon:

    def test_status_without_pid_file(self, tmp_path):
        assert daemon_status(tmp_path / "none.pid") == {"pid": None, "alive": False}

    def test_stop_without_pid_file(self, tmp_path):
        assert stop_daemon(tmp_path / "none.pid") is False

    def test_stop_cleans_stale_pid_file(self, tmp_path):
        pid_file = tmp_path / "stale.pid"
        write_pid_file(pid_file, 424242)
        with patch("src.cli.daemon.is_pid_alive", return_value=False):
            assert stop_daemon(pid_file) is False
        assert not pid_file.exists()

    def test_refuses_second_scheduler(self, tmp_path):
        pid_file = tmp_path / "live.pid"
        write_pid_file(pid_file, 4242)
        with patch("src.cli.daemon.is_pid_alive", return_value=True):
            with pytest.raises(DaemonAlreadyRunningError, match="4242"):
                run_daemon(object(), pid_file)

    def test_run_writes_and_removes_pid_file(self, tmp_path):
        pid_file = tmp_path / "run.pid"
        seen = []

        class _Scheduler:
            def run_forever(self, poll_interval):
                seen.append(read_pid_file(pid_file))

            def stop(self, timeout=None):
                pass

        run_daemon(_Scheduler(), pid_file)

        assert seen == [os.getpid()]
        assert not pid_file.exists()
