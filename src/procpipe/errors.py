"""procpipe exception types.

All failures delivered through a terminal future, a write future or raised
synchronously by the controller derive from :class:`ProcessError`.
"""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "ProcessError",
    "LaunchError",
    "NotLaunchedError",
    "InputClosedError",
    "WriteAbortedError",
    "ProcessCancelledError",
    "ProcessStateError",
]


class ProcessError(Exception):
    """Base exception for procpipe."""
    pass


class LaunchError(ProcessError):
    """The child process could not be started.

    Attributes:
        command: The command that failed to launch
    """

    def __init__(self, command: str | Sequence[str], message: str | None = None) -> None:
        self.command = command
        if message is None:
            shown = command if isinstance(command, str) else " ".join(command)
            message = f"Failed executing command: {shown}"
        super().__init__(message)


class NotLaunchedError(ProcessError):
    """Write attempted while no process is attached to the controller."""

    def __init__(self, message: str = "Process was not yet launched") -> None:
        super().__init__(message)


class InputClosedError(ProcessError):
    """Write attempted after the child's stdin was closed by close_input()."""

    def __init__(self, message: str = "Process stdin was already closed") -> None:
        super().__init__(message)


class WriteAbortedError(ProcessError):
    """A pending write will never complete."""

    FINISHED = "Write could not be completed, process finished"
    CANCELLED = "Write could not be completed, process watching was cancelled"
    INPUT_CLOSED = "Write could not be completed, stdin was closed by the process"


class ProcessCancelledError(ProcessError):
    """Terminal failure after the controller stopped watching the process."""

    def __init__(self, message: str = "Process watching was cancelled") -> None:
        super().__init__(message)


class ProcessStateError(ProcessError):
    """Internal invariant violated (process still running after stdout closed)."""
    pass
