"""Process launcher.

Starts a child process with three non-blocking pipes and exposes the status
query and signal delivery primitives used by the controller.

Key design points:
- A string command runs through the system shell, a sequence is exec'd directly
- POSIX only. new_session=True starts the child in its own session, and signals
  are then delivered to the whole process group
- Pipes are unbuffered and switched to non-blocking mode right after launch
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

__all__ = [
    "IS_WINDOWS",
    "LaunchSpec",
    "LaunchedProcess",
    "ProcessStatus",
    "SubprocessLauncher",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class LaunchSpec:
    """What to launch.

    Attributes:
        command: Shell command string, or argv list (first element is the executable)
        cwd: Working directory (None = inherit)
        env: Environment variables (None = inherit parent)
        new_session: Start the child in a new session/process group
    """

    command: str | Sequence[str]
    cwd: Path | str | None = None
    env: Mapping[str, str] | None = None
    new_session: bool = False


@dataclass(frozen=True)
class ProcessStatus:
    """Snapshot of the child's state.

    Attributes:
        running: Whether the child has not been reaped yet
        exit_code: Exit status; -1 while running or when killed by a signal
        signaled: Whether the child was terminated by a signal
        term_signal: The terminating signal number (when signaled)
        pid: OS process id
    """

    running: bool
    exit_code: int
    signaled: bool
    term_signal: int | None
    pid: int


class LaunchedProcess:
    """A started child together with its pipes."""

    def __init__(self, popen: subprocess.Popen, *, new_session: bool = False) -> None:
        self.popen = popen
        self.new_session = new_session

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def stdin(self) -> IO[bytes]:
        assert self.popen.stdin is not None
        return self.popen.stdin

    @property
    def stdout(self) -> IO[bytes]:
        assert self.popen.stdout is not None
        return self.popen.stdout

    @property
    def stderr(self) -> IO[bytes]:
        assert self.popen.stderr is not None
        return self.popen.stderr

    def close_stdin(self) -> None:
        if self.popen.stdin is not None and not self.popen.stdin.closed:
            self.popen.stdin.close()

    def close(self) -> None:
        """Close every pipe that is still open."""
        for stream in (self.popen.stdin, self.popen.stdout, self.popen.stderr):
            if stream is not None and not stream.closed:
                try:
                    stream.close()
                except OSError as e:
                    logger.debug(f"Error closing pipe of pid={self.pid}: {e}")

    def __repr__(self) -> str:
        return f"LaunchedProcess(pid={self.pid}, new_session={self.new_session})"


class SubprocessLauncher:
    """Launcher backed by :class:`subprocess.Popen`."""

    def start(self, spec: LaunchSpec) -> LaunchedProcess:
        """Start the child described by ``spec``.

        Raises:
            OSError: The process could not be started (missing executable, bad cwd, ...)
            ValueError: Empty command
        """
        if IS_WINDOWS:
            raise OSError("Readiness-driven pipes require a POSIX platform")
        if not spec.command:
            raise ValueError("Empty command")

        kwargs = self._build_popen_kwargs(spec)
        popen = subprocess.Popen(
            spec.command if isinstance(spec.command, str) else list(spec.command),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            **kwargs,
        )
        handle = LaunchedProcess(popen, new_session=spec.new_session)

        for stream in (handle.stdin, handle.stdout, handle.stderr):
            os.set_blocking(stream.fileno(), False)

        logger.debug(
            f"Started subprocess pid={handle.pid} "
            f"command={spec.command!r} cwd={spec.cwd}"
        )
        return handle

    def _build_popen_kwargs(self, spec: LaunchSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"shell": isinstance(spec.command, str)}

        if spec.cwd is not None:
            kwargs["cwd"] = str(spec.cwd)

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if spec.new_session:
            kwargs["start_new_session"] = True

        return kwargs

    def query_status(self, handle: LaunchedProcess) -> ProcessStatus:
        """Poll the child without blocking (reaps it once it has exited)."""
        returncode = handle.popen.poll()

        if returncode is None:
            return ProcessStatus(
                running=True, exit_code=-1, signaled=False, term_signal=None, pid=handle.pid
            )

        if returncode < 0:
            return ProcessStatus(
                running=False,
                exit_code=-1,
                signaled=True,
                term_signal=-returncode,
                pid=handle.pid,
            )

        return ProcessStatus(
            running=False, exit_code=returncode, signaled=False, term_signal=None, pid=handle.pid
        )

    def terminate(self, handle: LaunchedProcess, sig: int) -> bool:
        """Deliver ``sig`` to the child.

        Returns:
            Whether the signal was delivered
        """
        if handle.popen.poll() is not None:
            return False

        pid = handle.pid
        try:
            if handle.new_session:
                try:
                    # pgid == pid because of start_new_session
                    pgid = os.getpgid(pid)
                    os.killpg(pgid, sig)
                    logger.debug(f"Sent signal {sig} to process group pgid={pgid}")
                    return True
                except ProcessLookupError:
                    return False
                except OSError as e:
                    logger.debug(f"killpg failed, falling back to kill: {e}")

            os.kill(pid, sig)
            logger.debug(f"Sent signal {sig} to pid={pid}")
            return True
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
            return False
        except OSError as e:
            logger.warning(f"Error signalling subprocess pid={pid}: {e}")
            return False
