"""Runtime module for async child process I/O.

This module provides the readiness-driven process controller, the launcher
it delegates process creation to, and the data types it exchanges.
"""

from __future__ import annotations

from .launcher import LaunchSpec, LaunchedProcess, ProcessStatus, SubprocessLauncher
from .process import Process, ProgressCallback, run_process
from .types import BufferFlags, ProcessOptions, ProgressEvent, StreamSource, TerminalResult
from .writes import WriteQueue

__all__ = [
    "BufferFlags",
    "LaunchSpec",
    "LaunchedProcess",
    "Process",
    "ProcessOptions",
    "ProcessStatus",
    "ProgressCallback",
    "ProgressEvent",
    "StreamSource",
    "SubprocessLauncher",
    "TerminalResult",
    "WriteQueue",
    "run_process",
]
