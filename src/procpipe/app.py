"""procpipe command line entry point.

Runs one command through :class:`procpipe.runtime.Process`, relays this
process's stdin to it, echoes its output to the matching stream and exits
with its exit status.
"""

from __future__ import annotations

import argparse
import asyncio
import io
import logging
import os
import signal
import stat
import sys
from typing import Callable, Sequence

from .config import Config, get_config
from .errors import LaunchError, ProcessError
from .runtime import BufferFlags, Process, ProcessOptions, ProgressEvent, StreamSource, TerminalResult

__all__ = ["configure_logging", "exit_status", "run_command", "main"]

logger = logging.getLogger(__name__)

# Exit status when the command could not be started (shell convention)
EXIT_LAUNCH_FAILED = 127

STDIN_CHUNK_SIZE = 64 * 1024


def configure_logging(config: Config) -> None:
    """Install log handlers.

    Debug mode logs everything from the procpipe namespace to a temp file,
    otherwise INFO and above go to stderr. Third-party loggers stay at WARNING.
    """
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
        force=True,
    )
    logging.getLogger("procpipe").setLevel(log_level)


def exit_status(result: TerminalResult) -> int:
    """Map a terminal result to a shell exit status (128 + N for signal N)."""
    if result.signal is not None:
        return 128 + result.signal
    return result.exit_code


def _echo(event: ProgressEvent) -> None:
    target = sys.stdout.buffer if event.source is StreamSource.OUT else sys.stderr.buffer
    target.write(event.data)
    target.flush()


def _relay_stdin(proc: Process, loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
    """Forward our stdin to the child.

    Returns:
        A function undoing the relay
    """
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, ValueError, io.UnsupportedOperation):
        # No usable stdin (closed, None, or replaced by a test harness)
        proc.close_input()
        return lambda: None

    if stat.S_ISREG(os.fstat(fd).st_mode):
        # Regular files are always "ready", the selector refuses them
        data = sys.stdin.buffer.read()
        if data:
            proc.write(data)
        proc.close_input()
        return lambda: None

    # A tty shares its file description with stdout/stderr: keep it blocking,
    # a single read per readiness notification does not block.
    was_blocking = os.get_blocking(fd)
    if not os.isatty(fd):
        os.set_blocking(fd, False)

    def on_readable() -> None:
        try:
            data = os.read(fd, STDIN_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug(f"stdin relay read failed: {e}")
            data = b""

        if not data:
            loop.remove_reader(fd)
            proc.close_input()
            return

        try:
            proc.write(data)
        except ProcessError as e:
            logger.debug(f"stdin relay stopped: {e}")
            loop.remove_reader(fd)

    loop.add_reader(fd, on_readable)

    def undo() -> None:
        loop.remove_reader(fd)
        if os.get_blocking(fd) != was_blocking:
            os.set_blocking(fd, was_blocking)

    return undo


async def run_command(
    command: str | Sequence[str],
    *,
    cwd: str | None = None,
    buffer: BufferFlags = BufferFlags.NONE,
    relay_stdin: bool = True,
) -> int:
    """Run ``command``, echoing its output, and return its exit status."""
    loop = asyncio.get_running_loop()
    proc = Process(command, ProcessOptions(cwd=cwd, buffer=buffer))
    proc.subscribe(_echo)

    undo_relay: Callable[[], None] = lambda: None
    if proc.running:
        if relay_stdin:
            undo_relay = _relay_stdin(proc, loop)
        else:
            proc.close_input()

    try:
        result = await proc
    except LaunchError as e:
        logger.error(f"{e} ({e.__cause__})")
        return EXIT_LAUNCH_FAILED
    except asyncio.CancelledError:
        logger.info("Interrupted, cancelling the command")
        proc.cancel()
        raise
    finally:
        undo_relay()

    if buffer:
        logger.info(f"Command finished: {result!r}")
    return exit_status(result)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procpipe",
        description="Run a command with non-blocking stdin/stdout/stderr relaying",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for the command")
    parser.add_argument(
        "--buffer",
        default="none",
        choices=["none", "stdout", "stderr", "all"],
        help="Buffer these streams and log a summary at exit",
    )
    parser.add_argument(
        "--no-stdin",
        action="store_true",
        help="Do not forward stdin; the command sees end-of-file immediately",
    )
    parser.add_argument(
        "--shell",
        action="store_true",
        help="Join the command into one string and run it through the shell",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    command: list[str] = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no command given")

    configure_logging(get_config())

    try:
        code = asyncio.run(
            run_command(
                " ".join(command) if args.shell else command,
                cwd=args.cwd,
                buffer=BufferFlags.from_string(args.buffer),
                relay_stdin=not args.no_stdin,
            )
        )
    except KeyboardInterrupt:
        code = 128 + signal.SIGINT

    sys.exit(code)


if __name__ == "__main__":
    main()
