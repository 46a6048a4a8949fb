"""Stdin write accounting.

Keeps the bytes not yet handed to the OS, the cumulative submitted/written
counters and one future per submitted write, keyed by the cumulative offset
the write ends at. Offsets strictly increase with submission order, so the
pending writes live in a FIFO and are resolved from the front.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable

__all__ = ["WriteQueue"]


class WriteQueue:
    """Pending stdin bytes plus the futures waiting on them."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._buffer = bytearray()
        self._submitted = 0
        self._written = 0
        self._waiters: deque[tuple[int, asyncio.Future[int]]] = deque()

    @property
    def submitted(self) -> int:
        """Total bytes ever submitted."""
        return self._submitted

    @property
    def written(self) -> int:
        """Total bytes accepted by the OS."""
        return self._written

    @property
    def idle(self) -> bool:
        """Whether no bytes are waiting to be written."""
        return not self._buffer

    @property
    def buffered(self) -> int:
        """Bytes submitted but not yet written."""
        return len(self._buffer)

    def peek(self, size: int) -> bytes:
        """Return up to ``size`` of the bytes not yet written."""
        return bytes(self._buffer[:size])

    def __len__(self) -> int:
        """Number of writes still waiting for completion."""
        return len(self._waiters)

    def submit(self, data: bytes) -> asyncio.Future[int]:
        """Queue ``data`` and return a future for its completion.

        The future resolves with the cumulative offset the write ends at.

        Raises:
            ValueError: ``data`` is empty
        """
        if not data:
            raise ValueError("Cannot write an empty payload")

        self._buffer += data
        self._submitted += len(data)
        future: asyncio.Future[int] = self._loop.create_future()
        self._waiters.append((self._submitted, future))
        return future

    def advance(self, count: int) -> int:
        """Account for ``count`` bytes accepted by the OS.

        Resolves every waiter whose offset has been reached.

        Returns:
            Number of waiters resolved
        """
        if count > len(self._buffer):
            raise ValueError(f"Advanced past pending data ({count} > {len(self._buffer)})")

        if count:
            del self._buffer[:count]
            self._written += count

        resolved = 0
        while self._waiters and self._waiters[0][0] <= self._written:
            offset, future = self._waiters.popleft()
            if not future.done():
                future.set_result(offset)
            resolved += 1
        return resolved

    def fail_all(self, make_exc: Callable[[], BaseException]) -> int:
        """Fail every waiting write and drop the pending bytes.

        Each future gets its own exception instance built by ``make_exc``.

        Returns:
            Number of writes failed
        """
        failed = 0
        while self._waiters:
            _, future = self._waiters.popleft()
            if not future.done():
                future.set_exception(make_exc())
                failed += 1
        self._buffer.clear()
        return failed

    def __repr__(self) -> str:
        return (
            f"WriteQueue(submitted={self._submitted}, "
            f"written={self._written}, "
            f"waiting={len(self._waiters)})"
        )
