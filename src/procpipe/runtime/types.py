"""Runtime data types.

Defines the launch options, the progress event model and the terminal result
delivered by :class:`procpipe.runtime.process.Process`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum, IntFlag
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "BufferFlags",
    "StreamSource",
    "ProcessOptions",
    "ProgressEvent",
    "TerminalResult",
]


class BufferFlags(IntFlag):
    """Which output streams are accumulated into the terminal result."""

    NONE = 0
    STDOUT = 1
    STDERR = 2
    ALL = STDOUT | STDERR

    @classmethod
    def from_string(cls, value: str) -> "BufferFlags":
        """Parse none/stdout/stderr/all (case-insensitive).

        Raises:
            ValueError: Unknown value
        """
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown buffer mode: {value!r}") from None


class StreamSource(str, Enum):
    """Origin of a progress event."""

    OUT = "out"
    ERR = "err"


@dataclass(frozen=True)
class ProcessOptions:
    """Options for launching a child process.

    Attributes:
        cwd: Working directory (None = inherit)
        env: Environment variables (None = inherit parent)
        buffer: Output streams to accumulate into the terminal result
        new_session: Start in a new session (None = use config)
        chunk_size: Read chunk size in bytes (None = use config)
    """

    cwd: Path | str | None = None
    env: Mapping[str, str] | None = None
    buffer: BufferFlags = BufferFlags.NONE
    new_session: bool | None = None
    chunk_size: int | None = None

    def __post_init__(self) -> None:
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}")


class ProgressEvent(BaseModel):
    """A chunk of output read from the child.

    Attributes:
        source: "out" for stdout, "err" for stderr
        data: Raw bytes as read from the pipe (never empty)
        timestamp: Unix timestamp (seconds) of the read
    """

    model_config = ConfigDict(frozen=True)

    source: StreamSource
    data: bytes
    timestamp: float = Field(default_factory=time.time)

    def as_tuple(self) -> tuple[str, bytes]:
        return (self.source.value, self.data)


@dataclass(frozen=True)
class TerminalResult:
    """Final outcome of a child process.

    Attributes:
        exit_code: Exit status, -1 when the child was killed by a signal
        signal: Terminating signal number, None for a normal exit
        stdout: Buffered stdout (None unless BufferFlags.STDOUT was requested)
        stderr: Buffered stderr (None unless BufferFlags.STDERR was requested)
    """

    exit_code: int
    signal: int | None = None
    stdout: bytes | None = None
    stderr: bytes | None = None

    @property
    def success(self) -> bool:
        return self.signal is None and self.exit_code == 0

    def __repr__(self) -> str:
        def _size(buf: bytes | None) -> str:
            return "-" if buf is None else f"{len(buf)}B"

        return (
            f"TerminalResult(exit_code={self.exit_code}, "
            f"signal={self.signal}, "
            f"stdout={_size(self.stdout)}, "
            f"stderr={_size(self.stderr)})"
        )
