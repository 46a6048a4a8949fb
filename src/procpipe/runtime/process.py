"""Async process I/O controller.

This module provides:
- Readiness-driven reads of stdout/stderr, forwarded as progress events
- Stdin writes that complete asynchronously in submission order
- A single terminal result delivered once the child has exited

Key design points:
- Everything runs as event loop callbacks (add_reader/add_writer), so the
  shared state needs ordering, not locking
- stdout end-of-stream is the termination trigger: the child's exit closes
  it, and finalizing after the last read keeps trailing output
- Finalization is deferred to the next loop turn (call_soon) so the current
  callback finishes before the terminal result is delivered
- Once the child is running, cancel() is the only regular path that fails
  the terminal future (ProcessStateError marks a broken invariant)
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import signal
from collections.abc import Callable, Generator, Sequence
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from ..config import Config, get_config
from ..errors import (
    InputClosedError,
    LaunchError,
    NotLaunchedError,
    ProcessCancelledError,
    ProcessStateError,
    WriteAbortedError,
)
from .launcher import LaunchSpec, LaunchedProcess, SubprocessLauncher
from .types import BufferFlags, ProcessOptions, ProgressEvent, StreamSource, TerminalResult
from .writes import WriteQueue

__all__ = [
    "Process",
    "ProgressCallback",
    "run_process",
]

logger = logging.getLogger(__name__)

# Progress callbacks receive every chunk read from stdout/stderr
ProgressCallback = Callable[[ProgressEvent], None]

# Upper bound for a single os.write() call
WRITE_CHUNK_SIZE = 64 * 1024


class Process:
    """A child process driven by event loop readiness callbacks.

    The controller is awaitable and resolves to a :class:`TerminalResult`.

    Example:
        proc = Process("sort", ProcessOptions(buffer=BufferFlags.STDOUT))
        proc.write(b"b\\na\\n")
        proc.close_input()
        result = await proc
        assert result.stdout == b"a\\nb\\n"

    Construction must happen inside a running event loop (or pass ``loop``).
    A launch failure does not raise: the terminal result fails with
    :class:`LaunchError` instead.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        options: ProcessOptions | None = None,
        *,
        launcher: SubprocessLauncher | None = None,
        config: Config | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.command = command
        self._loop = loop or asyncio.get_running_loop()
        self._config = config or get_config()
        self._options = options or ProcessOptions()
        self._launcher = launcher or SubprocessLauncher()

        self._handle: LaunchedProcess | None = None
        self._future: asyncio.Future[TerminalResult] = self._loop.create_future()
        self._future.add_done_callback(_log_failure)
        self._writes = WriteQueue(self._loop)
        self._callbacks: list[ProgressCallback] = []
        self._streams: list[MemoryObjectSendStream[ProgressEvent]] = []

        buffer = self._options.buffer
        self._stdout_buf = bytearray() if buffer & BufferFlags.STDOUT else None
        self._stderr_buf = bytearray() if buffer & BufferFlags.STDERR else None
        self._chunk_size = self._options.chunk_size or self._config.chunk_size

        self._stdin_fd = -1
        self._stdout_fd = -1
        self._stderr_fd = -1
        self._stdin_watched = False
        self._stdout_watched = False
        self._stderr_watched = False
        self._stdout_eof = False
        self._input_closing = False
        self._input_broken = False
        self._reap_deadline: float | None = None

        new_session = self._options.new_session
        spec = LaunchSpec(
            command=command,
            cwd=self._options.cwd,
            env=self._options.env,
            new_session=self._config.new_session if new_session is None else new_session,
        )

        try:
            handle = self._launcher.start(spec)
        except (OSError, ValueError) as e:
            logger.debug(f"Launch failed command={command!r}: {e}")
            error = LaunchError(command)
            error.__cause__ = e
            self._future.set_exception(error)
            return

        self._handle = handle
        self._stdin_fd = handle.stdin.fileno()
        self._stdout_fd = handle.stdout.fileno()
        self._stderr_fd = handle.stderr.fileno()

        self._loop.add_reader(self._stdout_fd, self._on_stdout_readable)
        self._stdout_watched = True
        self._loop.add_reader(self._stderr_fd, self._on_stderr_readable)
        self._stderr_watched = True

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        """OS process id while the process is being watched."""
        if self._handle is None:
            return None
        return self._handle.pid

    @property
    def running(self) -> bool:
        """Whether the controller still owns a live process handle."""
        return self._handle is not None

    def write(self, data: bytes | str) -> asyncio.Future[int]:
        """Queue ``data`` for the child's stdin.

        ``str`` is encoded as UTF-8. Nothing is written synchronously: the
        bytes go out on the next writability notification.

        Returns:
            Future resolving with the cumulative number of bytes submitted up
            to and including this write, once they have all been written

        Raises:
            ValueError: Empty payload
            NotLaunchedError: No process attached (launch failed, exited or cancelled)
            InputClosedError: close_input() was already called
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            raise ValueError("Cannot write an empty payload")

        if self._handle is None:
            raise NotLaunchedError()
        if self._input_closing:
            raise InputClosedError()

        if self._input_broken:
            future: asyncio.Future[int] = self._loop.create_future()
            future.set_exception(WriteAbortedError(WriteAbortedError.INPUT_CLOSED))
            future.add_done_callback(_log_failure)
            return future

        future = self._writes.submit(bytes(data))
        future.add_done_callback(_log_failure)
        self._watch_stdin()
        return future

    def close_input(self) -> None:
        """Close the child's stdin once every submitted byte has been written."""
        if self._handle is None or self._input_closing:
            return

        self._input_closing = True
        if self._writes.idle:
            self._close_stdin_pipe()

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Send ``sig`` to the child.

        The terminal result still arrives once stdout closes.

        Returns:
            Whether the signal was delivered
        """
        if self._handle is None:
            return False
        return self._launcher.terminate(self._handle, sig)

    def cancel(self, sig: int = signal.SIGKILL) -> None:
        """Signal the child and stop watching it immediately.

        The terminal result fails with :class:`ProcessCancelledError` and
        every pending write fails with :class:`WriteAbortedError`.
        """
        handle = self._handle
        if handle is None:
            return

        delivered = self._launcher.terminate(handle, sig)
        logger.debug(f"Cancelling watch of pid={handle.pid} signal={sig} delivered={delivered}")

        self._teardown()
        if not self._future.done():
            self._future.set_exception(ProcessCancelledError())
        failed = self._writes.fail_all(lambda: WriteAbortedError(WriteAbortedError.CANCELLED))
        if failed:
            logger.debug(f"Failed {failed} pending write(s) of pid={handle.pid}")
        self._close_streams()

        self._reap_abandoned(handle, self._loop.time() + self._config.reap_timeout)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback invoked for every progress event.

        Returns:
            A function removing the callback
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def events(self) -> MemoryObjectReceiveStream[ProgressEvent]:
        """Open a stream of the progress events read from now on.

        The stream ends once the terminal result is settled.
        """
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        if self._future.done():
            send.close()
        else:
            self._streams.append(send)
        return receive

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> TerminalResult:
        """Return the terminal result (raises its failure, or InvalidStateError if pending)."""
        return self._future.result()

    def exception(self) -> BaseException | None:
        return self._future.exception()

    async def wait(self) -> TerminalResult:
        """Wait for the terminal result.

        Cancelling the waiter does not cancel the terminal result.
        """
        return await asyncio.shield(self._future)

    def __await__(self) -> Generator[Any, None, TerminalResult]:
        return self.wait().__await__()

    # ------------------------------------------------------------------
    # Stream reader loop
    # ------------------------------------------------------------------

    def _read_chunk(self, fd: int) -> bytes | None:
        """Read one chunk; None when nothing is available, b"" at end-of-stream."""
        try:
            return os.read(fd, self._chunk_size)
        except BlockingIOError:
            return None
        except OSError as e:
            logger.debug(f"Read failed on fd={fd}, treating as end-of-stream: {e}")
            return b""

    def _on_stdout_readable(self) -> None:
        data = self._read_chunk(self._stdout_fd)
        if data is None:
            return

        if data:
            if self._stdout_buf is not None:
                self._stdout_buf += data
            self._emit(StreamSource.OUT, data)
            return

        logger.debug(f"stdout closed pid={self.pid}")
        self._stdout_eof = True
        self._unwatch_stdout()
        self._unwatch_stdin()
        self._loop.call_soon(self._finalize)

    def _on_stderr_readable(self) -> None:
        data = self._read_chunk(self._stderr_fd)
        if data is not None:
            self._handle_stderr(data)

    def _handle_stderr(self, data: bytes) -> None:
        if data:
            if self._stderr_buf is not None:
                self._stderr_buf += data
            self._emit(StreamSource.ERR, data)
            return

        logger.debug(f"stderr closed pid={self.pid}")
        self._unwatch_stderr()

    def _drain_stderr(self) -> None:
        """Deliver whatever stderr still holds without waiting."""
        while self._stderr_watched:
            data = self._read_chunk(self._stderr_fd)
            if data is None:
                return
            self._handle_stderr(data)

    def _emit(self, source: StreamSource, data: bytes) -> None:
        event = ProgressEvent(source=source, data=data)

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Error in progress callback: {e}")

        for stream in list(self._streams):
            try:
                stream.send_nowait(event)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                # Receiver went away, or a callback cancelled the watch
                if stream in self._streams:
                    self._streams.remove(stream)

    def _close_streams(self) -> None:
        for stream in self._streams:
            stream.close()
        self._streams.clear()
        self._callbacks.clear()

    # ------------------------------------------------------------------
    # Write scheduler
    # ------------------------------------------------------------------

    def _on_stdin_writable(self) -> None:
        try:
            count = os.write(self._stdin_fd, self._writes.peek(WRITE_CHUNK_SIZE))
        except BlockingIOError:
            count = 0
        except OSError as e:
            # BrokenPipeError: the child closed its end
            logger.debug(f"stdin write failed pid={self.pid}: {e}")
            self._abort_input()
            return

        self._writes.advance(count)

        if self._writes.idle:
            self._unwatch_stdin()
            if self._input_closing:
                self._close_stdin_pipe()

    def _abort_input(self) -> None:
        self._input_broken = True
        self._close_stdin_pipe()
        failed = self._writes.fail_all(lambda: WriteAbortedError(WriteAbortedError.INPUT_CLOSED))
        if failed:
            logger.debug(f"Failed {failed} pending write(s), stdin closed by pid={self.pid}")

    def _close_stdin_pipe(self) -> None:
        self._unwatch_stdin()
        if self._handle is not None:
            self._handle.close_stdin()
            logger.debug(f"stdin closed pid={self._handle.pid}")

    # ------------------------------------------------------------------
    # Completion coordinator
    # ------------------------------------------------------------------

    def _finalize(self) -> None:
        handle = self._handle
        if handle is None:
            # Cancelled before this turn came
            return

        status = self._launcher.query_status(handle)

        if status.running:
            now = self._loop.time()
            if self._reap_deadline is None:
                self._reap_deadline = now + self._config.reap_timeout
            if now < self._reap_deadline:
                self._loop.call_later(self._config.reap_interval, self._finalize)
                return

            logger.error(
                f"Subprocess still running after stdout closed pid={status.pid} "
                f"(waited {self._config.reap_timeout}s)"
            )
            self._teardown()
            self._future.set_exception(
                ProcessStateError(f"Process pid={status.pid} still running after stdout closed")
            )
            self._writes.fail_all(lambda: WriteAbortedError(WriteAbortedError.FINISHED))
            self._close_streams()
            return

        self._drain_stderr()
        if self._handle is None:
            # A progress callback cancelled the watch while draining
            return

        result = TerminalResult(
            exit_code=status.exit_code,
            signal=status.term_signal if status.signaled else None,
            stdout=bytes(self._stdout_buf) if self._stdout_buf is not None else None,
            stderr=bytes(self._stderr_buf) if self._stderr_buf is not None else None,
        )
        logger.debug(f"Subprocess completed pid={status.pid} result={result!r}")

        self._teardown()
        if not self._future.done():
            self._future.set_result(result)

        failed = self._writes.fail_all(lambda: WriteAbortedError(WriteAbortedError.FINISHED))
        if failed:
            logger.debug(f"Failed {failed} pending write(s), pid={status.pid} finished")
        self._close_streams()

    def _teardown(self) -> None:
        """Drop every registration, close the pipes and invalidate the handle."""
        self._unwatch_stdout()
        self._unwatch_stderr()
        self._unwatch_stdin()
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _reap_abandoned(self, handle: LaunchedProcess, deadline: float) -> None:
        if not self._launcher.query_status(handle).running:
            logger.debug(f"Reaped cancelled subprocess pid={handle.pid}")
            return
        if self._loop.time() >= deadline:
            logger.debug(f"Gave up reaping cancelled subprocess pid={handle.pid}")
            return
        self._loop.call_later(
            self._config.reap_interval, self._reap_abandoned, handle, deadline
        )

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------

    def _watch_stdin(self) -> None:
        if self._stdin_watched or self._stdout_eof or self._handle is None:
            return
        self._loop.add_writer(self._stdin_fd, self._on_stdin_writable)
        self._stdin_watched = True

    def _unwatch_stdin(self) -> None:
        if self._stdin_watched:
            self._loop.remove_writer(self._stdin_fd)
            self._stdin_watched = False

    def _unwatch_stdout(self) -> None:
        if self._stdout_watched:
            self._loop.remove_reader(self._stdout_fd)
            self._stdout_watched = False

    def _unwatch_stderr(self) -> None:
        if self._stderr_watched:
            self._loop.remove_reader(self._stderr_fd)
            self._stderr_watched = False

    def __repr__(self) -> str:
        if self._handle is not None:
            state = "running"
        elif self._future.done():
            state = "done"
        else:
            state = "finishing"
        return f"Process(command={self.command!r}, pid={self.pid}, state={state}, writes={self._writes!r})"


def _log_failure(future: asyncio.Future[Any]) -> None:
    # Marks the exception as retrieved
    if not future.cancelled() and future.exception() is not None:
        logger.debug(f"Future failed: {future.exception()!r}")


async def run_process(
    command: str | Sequence[str],
    *,
    input: bytes | str | None = None,
    options: ProcessOptions | None = None,
    on_event: ProgressCallback | None = None,
) -> TerminalResult:
    """Run a command to completion.

    This is a convenience function for cases where incremental I/O is not
    needed: ``input`` is written to stdin, stdin is closed, and the terminal
    result is returned. Both streams are buffered unless ``options`` says
    otherwise.

    Raises:
        LaunchError: The command could not be started
    """
    if options is None:
        options = ProcessOptions(buffer=BufferFlags.ALL)

    proc = Process(command, options)
    if on_event is not None:
        proc.subscribe(on_event)

    if proc.running:
        if input:
            proc.write(input)
        proc.close_input()

    return await proc
