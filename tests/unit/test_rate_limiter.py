"""Unit tests for the rate-limited action queue."""

import asyncio
import time
from unittest.mock import patch

import pytest

from sitescribe.queue.rate_limiter import RateLimitedActionQueue


# asyncio timers may fire up to one clock tick early
TIMER_SLACK = 0.002


class TestRateLimitedActionQueue:
    """Tests for RateLimitedActionQueue."""

    @pytest.fixture
    def queue(self):
        return RateLimitedActionQueue(min_delay_ms=50)

    @pytest.mark.asyncio
    async def test_actions_run_in_call_order_with_min_spacing(self, queue):
        """Consecutive action starts are at least min_delay apart, in FIFO order."""
        starts = []

        def make_action(index):
            async def action():
                starts.append((index, time.monotonic()))
                await asyncio.sleep(0.005)
                return index
            return action

        results = await asyncio.gather(*(queue.enqueue(make_action(i)) for i in range(4)))

        assert results == [0, 1, 2, 3]
        assert [index for index, _ in starts] == [0, 1, 2, 3]
        for (_, previous), (_, current) in zip(starts, starts[1:]):
            assert current - previous >= queue.min_delay - TIMER_SLACK

    @pytest.mark.asyncio
    async def test_failure_rejects_only_its_caller(self, queue):
        """A failing action rejects its own call and the queue keeps going."""
        executed = []

        def make_action(index, fail=False):
            async def action():
                executed.append(index)
                if fail:
                    raise ValueError(f"action {index} failed")
                return index
            return action

        results = await asyncio.gather(
            queue.enqueue(make_action(1)),
            queue.enqueue(make_action(2, fail=True)),
            queue.enqueue(make_action(3)),
            return_exceptions=True,
        )

        assert results[0] == 1
        assert isinstance(results[1], ValueError)
        assert str(results[1]) == "action 2 failed"
        assert results[2] == 3
        assert executed == [1, 2, 3]

        stats = queue.get_stats()
        assert stats['executed'] == 2
        assert stats['failed'] == 1
        assert stats['pending'] == 0

    @pytest.mark.asyncio
    async def test_original_exception_is_propagated(self, queue):
        """The caller sees the exact exception object the action raised."""
        error = RuntimeError("quota exceeded")

        async def action():
            raise error

        with pytest.raises(RuntimeError) as exc_info:
            await queue.enqueue(action)
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_single_processing_loop(self):
        """Enqueueing while the queue drains does not start a second loop."""
        queue = RateLimitedActionQueue(min_delay_ms=0)

        async def action():
            await asyncio.sleep(0)
            return "ok"

        with patch.object(queue, '_process', wraps=queue._process) as process:
            await asyncio.gather(*(queue.enqueue(action) for _ in range(3)))
            assert process.call_count == 1

            # The loop restarts once the queue drained
            await queue.enqueue(action)
            assert process.call_count == 2

        assert queue.processing is False
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_default_action(self):
        """The action given at construction is used when none is passed."""
        calls = []

        async def capture():
            calls.append(1)
            return b"png"

        queue = RateLimitedActionQueue(capture, min_delay_ms=0)

        assert await queue.enqueue() == b"png"
        assert await queue.enqueue() == b"png"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_missing_action(self):
        """Enqueueing without any action is rejected."""
        queue = RateLimitedActionQueue(min_delay_ms=0)

        with pytest.raises(ValueError, match="No action configured"):
            await queue.enqueue()

    @pytest.mark.asyncio
    async def test_spacing_applies_across_bursts(self, queue):
        """A late caller still waits for min_delay after the previous action."""
        async def action():
            return time.monotonic()

        first = await queue.enqueue(action)
        second = await queue.enqueue(action)

        assert second - first >= queue.min_delay - TIMER_SLACK
        assert queue.get_stats()['total_wait_ms'] > 0

    def test_initial_stats(self):
        """Fresh queue reports its configuration and zero counters."""
        queue = RateLimitedActionQueue(min_delay_ms=1000)
        stats = queue.get_stats()

        assert stats['min_delay_ms'] == 1000
        assert stats['enqueued'] == 0
        assert stats['processing'] is False
