"""SubprocessLauncher unit tests.

Test coverage:
- Starting children with non-blocking pipes
- Popen keyword construction (cwd, env, sessions)
- Status queries (running, exit code, signal)
- Signal delivery
"""

from __future__ import annotations

import os
import signal
import sys
import time
from pathlib import Path
from unittest import mock

import pytest

from procpipe.runtime import launcher as launcher_module
from procpipe.runtime.launcher import (
    IS_WINDOWS,
    LaunchSpec,
    LaunchedProcess,
    SubprocessLauncher,
)

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX pipes and signals")


def _wait_exit(launcher: SubprocessLauncher, handle: LaunchedProcess, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = launcher.query_status(handle)
        if not status.running:
            return status
        time.sleep(0.01)
    raise AssertionError(f"pid={handle.pid} did not exit")


@pytest.fixture
def launcher() -> SubprocessLauncher:
    return SubprocessLauncher()


# =============================================================================
# LaunchSpec Tests
# =============================================================================


class TestLaunchSpec:
    """Test LaunchSpec dataclass."""

    def test_frozen(self):
        """LaunchSpec should be immutable."""
        spec = LaunchSpec(command=["echo"])
        with pytest.raises(AttributeError):
            spec.command = ["cat"]  # type: ignore[misc]

    def test_default_values(self):
        """Test default values."""
        spec = LaunchSpec(command="true")
        assert spec.cwd is None
        assert spec.env is None
        assert spec.new_session is False


# =============================================================================
# Popen Keyword Tests
# =============================================================================


class TestPopenKwargs:
    """Test Popen keyword construction."""

    def test_sequence_is_not_shell(self, launcher: SubprocessLauncher):
        kwargs = launcher._build_popen_kwargs(LaunchSpec(command=["echo", "hi"]))
        assert kwargs == {"shell": False}

    def test_string_runs_through_shell(self, launcher: SubprocessLauncher):
        kwargs = launcher._build_popen_kwargs(LaunchSpec(command="echo hi"))
        assert kwargs["shell"] is True

    def test_cwd_and_env(self, tmp_path: Path, launcher: SubprocessLauncher):
        kwargs = launcher._build_popen_kwargs(
            LaunchSpec(command=["true"], cwd=tmp_path, env={"A": "1"})
        )
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["env"] == {"A": "1"}

    def test_new_session(self, launcher: SubprocessLauncher):
        kwargs = launcher._build_popen_kwargs(LaunchSpec(command=["true"], new_session=True))
        assert kwargs["start_new_session"] is True


# =============================================================================
# Start Tests
# =============================================================================


class TestStart:
    """Test starting children."""

    def test_pipes_are_non_blocking(self, launcher: SubprocessLauncher):
        """All three pipes are switched to non-blocking mode."""
        handle = launcher.start(LaunchSpec(command=["cat"]))
        try:
            for stream in (handle.stdin, handle.stdout, handle.stderr):
                assert os.get_blocking(stream.fileno()) is False
            assert handle.pid > 0
        finally:
            handle.close()
            _wait_exit(launcher, handle)

    def test_empty_command(self, launcher: SubprocessLauncher):
        with pytest.raises(ValueError):
            launcher.start(LaunchSpec(command=[]))
        with pytest.raises(ValueError):
            launcher.start(LaunchSpec(command=""))

    def test_non_posix_platform_rejected(self, launcher: SubprocessLauncher, monkeypatch):
        """Starting on Windows fails before anything is spawned."""
        monkeypatch.setattr(launcher_module, "IS_WINDOWS", True)
        monkeypatch.setattr(
            launcher_module.subprocess,
            "Popen",
            mock.Mock(side_effect=AssertionError("Popen must not be called")),
        )

        with pytest.raises(OSError, match="POSIX"):
            launcher.start(LaunchSpec(command=["true"]))

    def test_missing_executable(self, launcher: SubprocessLauncher):
        with pytest.raises(OSError):
            launcher.start(LaunchSpec(command=["nonexistent_command_xyz_123"]))

    def test_close_stdin_is_idempotent(self, launcher: SubprocessLauncher):
        """Closing stdin twice is harmless and cat then exits."""
        handle = launcher.start(LaunchSpec(command=["cat"]))
        handle.close_stdin()
        handle.close_stdin()

        status = _wait_exit(launcher, handle)
        handle.close()

        assert status.exit_code == 0


# =============================================================================
# Status Tests
# =============================================================================


class TestQueryStatus:
    """Test status queries."""

    def test_exit_code(self, launcher: SubprocessLauncher):
        handle = launcher.start(LaunchSpec(command="exit 7"))
        status = _wait_exit(launcher, handle)
        handle.close()

        assert status.running is False
        assert status.exit_code == 7
        assert status.signaled is False
        assert status.term_signal is None
        assert status.pid == handle.pid

    def test_running(self, launcher: SubprocessLauncher):
        handle = launcher.start(LaunchSpec(command=["sleep", "10"]))
        try:
            status = launcher.query_status(handle)
            assert status.running is True
            assert status.exit_code == -1
        finally:
            launcher.terminate(handle, signal.SIGKILL)
            _wait_exit(launcher, handle)
            handle.close()


# =============================================================================
# Signal Tests
# =============================================================================


class TestTerminate:
    """Test signal delivery."""

    def test_terminate_running(self, launcher: SubprocessLauncher):
        """A delivered signal shows up in the status."""
        handle = launcher.start(LaunchSpec(command=["sleep", "10"]))

        assert launcher.terminate(handle, signal.SIGTERM) is True
        status = _wait_exit(launcher, handle)
        handle.close()

        assert status.signaled is True
        assert status.term_signal == signal.SIGTERM
        assert status.exit_code == -1

    def test_terminate_exited(self, launcher: SubprocessLauncher):
        """Signalling a reaped child reports failure."""
        handle = launcher.start(LaunchSpec(command=["true"]))
        _wait_exit(launcher, handle)
        handle.close()

        assert launcher.terminate(handle, signal.SIGTERM) is False

    def test_terminate_process_group(self, launcher: SubprocessLauncher):
        """With a new session the whole group is signalled."""
        handle = launcher.start(
            LaunchSpec(
                command=[sys.executable, "-c", "import time; time.sleep(10)"],
                new_session=True,
            )
        )
        assert os.getpgid(handle.pid) == handle.pid

        assert launcher.terminate(handle, signal.SIGKILL) is True
        status = _wait_exit(launcher, handle)
        handle.close()

        assert status.term_signal == signal.SIGKILL
