"""WriteQueue unit tests.

Test coverage:
- Cumulative offsets per write
- Resolution order and early stop on partial writes
- Empty payload rejection
- Failing every pending write
"""

from __future__ import annotations

import asyncio

import pytest

from procpipe.errors import WriteAbortedError
from procpipe.runtime.writes import WriteQueue


def _queue() -> WriteQueue:
    return WriteQueue(asyncio.get_running_loop())


# =============================================================================
# Submission
# =============================================================================


class TestSubmit:
    """Test submitting writes."""

    @pytest.mark.asyncio
    async def test_submit_tracks_cumulative_total(self):
        """Each submission bumps the submitted counter."""
        queue = _queue()
        queue.submit(b"abc")
        queue.submit(b"defg")

        assert queue.submitted == 7
        assert queue.written == 0
        assert queue.buffered == 7
        assert len(queue) == 2
        assert not queue.idle

    @pytest.mark.asyncio
    async def test_empty_payload_rejected_without_mutation(self):
        """Empty payloads raise and leave the accounting alone."""
        queue = _queue()
        queue.submit(b"abc")

        with pytest.raises(ValueError, match="empty"):
            queue.submit(b"")

        assert queue.submitted == 3
        assert queue.buffered == 3
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_new_queue_is_idle(self):
        """Nothing submitted means nothing to write."""
        queue = _queue()
        assert queue.idle
        assert queue.peek(1024) == b""

    @pytest.mark.asyncio
    async def test_peek_is_bounded(self):
        """peek returns at most the requested size, oldest bytes first."""
        queue = _queue()
        queue.submit(b"hello")
        queue.submit(b"world")

        assert queue.peek(3) == b"hel"
        assert queue.peek(100) == b"helloworld"


# =============================================================================
# Advancing
# =============================================================================


class TestAdvance:
    """Test accounting for bytes accepted by the OS."""

    @pytest.mark.asyncio
    async def test_single_flush_resolves_both_writes(self):
        """One OS write covering two submissions resolves both, in order."""
        queue = _queue()
        first = queue.submit(b"abc")
        second = queue.submit(b"defg")
        order: list[int] = []
        first.add_done_callback(lambda f: order.append(f.result()))
        second.add_done_callback(lambda f: order.append(f.result()))

        resolved = queue.advance(7)

        assert resolved == 2
        assert first.result() == 3
        assert second.result() == 7
        assert queue.idle

        await asyncio.sleep(0)
        assert order == [3, 7]

    @pytest.mark.asyncio
    async def test_partial_write_stops_at_first_unmet_offset(self):
        """A partial write resolves only the writes it fully covers."""
        queue = _queue()
        first = queue.submit(b"abc")
        second = queue.submit(b"defg")
        third = queue.submit(b"h")

        assert queue.advance(5) == 1
        assert first.done()
        assert not second.done()
        assert not third.done()
        assert queue.peek(100) == b"fgh"

        assert queue.advance(2) == 1
        assert second.result() == 7
        assert not third.done()

        assert queue.advance(1) == 1
        assert third.result() == 8

    @pytest.mark.asyncio
    async def test_zero_byte_advance_resolves_nothing(self):
        """Advancing by zero (EAGAIN) changes nothing."""
        queue = _queue()
        future = queue.submit(b"abc")

        assert queue.advance(0) == 0
        assert not future.done()
        assert queue.written == 0

    @pytest.mark.asyncio
    async def test_advance_past_pending_data_raises(self):
        """Cannot account for more bytes than were pending."""
        queue = _queue()
        queue.submit(b"abc")

        with pytest.raises(ValueError):
            queue.advance(4)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_skipped(self):
        """A write future cancelled by its caller is dropped quietly."""
        queue = _queue()
        first = queue.submit(b"abc")
        second = queue.submit(b"d")
        first.cancel()

        assert queue.advance(4) == 2
        assert first.cancelled()
        assert second.result() == 4

    @pytest.mark.asyncio
    async def test_values_strictly_increase(self):
        """Offsets grow with submission order."""
        queue = _queue()
        futures = [queue.submit(b"x" * size) for size in (1, 5, 2, 9)]

        queue.advance(17)

        assert [f.result() for f in futures] == [1, 6, 8, 17]


# =============================================================================
# Failure
# =============================================================================


class TestFailAll:
    """Test failing pending writes."""

    @pytest.mark.asyncio
    async def test_fail_all(self):
        """Every pending write fails with its own exception."""
        queue = _queue()
        first = queue.submit(b"abc")
        second = queue.submit(b"def")

        failed = queue.fail_all(lambda: WriteAbortedError(WriteAbortedError.FINISHED))

        assert failed == 2
        assert len(queue) == 0
        assert queue.buffered == 0
        assert isinstance(first.exception(), WriteAbortedError)
        assert isinstance(second.exception(), WriteAbortedError)
        assert first.exception() is not second.exception()
        assert "process finished" in str(first.exception())

    @pytest.mark.asyncio
    async def test_fail_all_leaves_resolved_writes_alone(self):
        """Already resolved writes keep their result."""
        queue = _queue()
        first = queue.submit(b"abc")
        second = queue.submit(b"def")
        queue.advance(3)

        failed = queue.fail_all(lambda: WriteAbortedError(WriteAbortedError.CANCELLED))

        assert failed == 1
        assert first.result() == 3
        with pytest.raises(WriteAbortedError, match="cancelled"):
            second.result()
