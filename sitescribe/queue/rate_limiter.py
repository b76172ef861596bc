"""FIFO rate limiting for scarce, globally limited actions.

This module implements the queue that serializes screenshot captures: at most
one action is outstanding at a time and consecutive actions start at least
``min_delay_ms`` apart, regardless of which page asked for them.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional


logger = logging.getLogger(__name__)


Action = Callable[[], Awaitable[Any]]


@dataclass
class QueueEntry:
    """A pending request for the limited action and its eventual outcome."""
    future: asyncio.Future
    action: Action
    enqueued_at: float = field(default_factory=time.monotonic)


class RateLimitedActionQueue:
    """Serializes calls to a rate-limited action in strict FIFO order.

    The queue is process-wide: share one instance between every page that
    needs the action.
    """

    def __init__(self, action: Optional[Action] = None, min_delay_ms: int = 1000):
        """Initialize the queue.

        Args:
            action: Default coroutine function executed for each entry
            min_delay_ms: Minimum spacing between consecutive action starts
        """
        self._action = action
        self.min_delay = min_delay_ms / 1000.0
        self._queue: Deque[QueueEntry] = deque()
        self._processing = False
        self._last_action_time: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

        self._stats = {
            "enqueued": 0,
            "executed": 0,
            "failed": 0,
            "total_wait_ms": 0.0,
        }

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def enqueue(self, action: Optional[Action] = None) -> Any:
        """Queue one execution of the action and wait for its outcome.

        Args:
            action: Override for the default action (e.g. bound to one page)

        Returns:
            Whatever the action returned

        Raises:
            Whatever the action raised, for this caller only
        """
        operation = action or self._action
        if operation is None:
            raise ValueError("No action configured for rate-limited queue")

        loop = asyncio.get_running_loop()
        entry = QueueEntry(future=loop.create_future(), action=operation)
        self._queue.append(entry)
        self._stats["enqueued"] += 1
        logger.debug(f"Rate-limited action queued (pending={len(self._queue)})")

        if not self._processing:
            self._processing = True
            self._task = asyncio.create_task(self._process())

        return await entry.future

    async def _process(self) -> None:
        """Drain the queue, one entry at a time, honoring the minimum delay."""
        try:
            while self._queue:
                wait = self._time_until_ready()
                if wait > 0:
                    self._stats["total_wait_ms"] += wait * 1000
                    logger.debug(f"Rate limit: waiting {wait:.3f}s before next action")
                    await asyncio.sleep(wait)

                entry = self._queue.popleft()
                try:
                    result = await entry.action()
                except Exception as e:
                    self._last_action_time = time.monotonic()
                    self._stats["failed"] += 1
                    logger.warning(f"Rate-limited action failed: {e}")
                    if not entry.future.done():
                        entry.future.set_exception(e)
                else:
                    self._last_action_time = time.monotonic()
                    self._stats["executed"] += 1
                    if not entry.future.done():
                        entry.future.set_result(result)
        finally:
            self._processing = False

    def _time_until_ready(self) -> float:
        if self._last_action_time is None:
            return 0.0
        return max(0.0, self._last_action_time + self.min_delay - time.monotonic())

    def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        return {
            "min_delay_ms": self.min_delay * 1000,
            "pending": len(self._queue),
            "processing": self._processing,
            **self._stats,
        }
