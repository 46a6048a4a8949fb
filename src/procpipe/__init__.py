"""procpipe - async child process I/O.

Environment variables:
    PROCPIPE_CHUNK_SIZE: read chunk size (default 8192)
    PROCPIPE_NEW_SESSION: start children in a new session (default false)
    PROCPIPE_REAP_TIMEOUT: reap grace period after stdout closes (default 5.0s)
    PROCPIPE_REAP_INTERVAL: status re-check interval during the grace period (default 0.01s)
    PROCPIPE_LOG_DEBUG: debug logging to a temp file (default false)

Usage:
    procpipe -- COMMAND [ARGS...]
"""

__version__ = "0.1.0"

from .errors import (
    InputClosedError,
    LaunchError,
    NotLaunchedError,
    ProcessCancelledError,
    ProcessError,
    ProcessStateError,
    WriteAbortedError,
)
from .runtime import (
    BufferFlags,
    Process,
    ProcessOptions,
    ProgressEvent,
    StreamSource,
    TerminalResult,
    run_process,
)

__all__ = [
    "__version__",
    "BufferFlags",
    "InputClosedError",
    "LaunchError",
    "NotLaunchedError",
    "Process",
    "ProcessCancelledError",
    "ProcessError",
    "ProcessOptions",
    "ProcessStateError",
    "ProgressEvent",
    "StreamSource",
    "TerminalResult",
    "WriteAbortedError",
    "run_process",
]
