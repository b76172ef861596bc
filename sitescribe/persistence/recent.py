"""Bounded log of the most recent captures."""

import json
import logging
from pathlib import Path
from typing import Callable, List, Optional, Union

import aiofiles
from pydantic import ValidationError

from ..models.capture import CaptureRecord


logger = logging.getLogger(__name__)


DEFAULT_CAPACITY = 10


class RecentCapturesLog:
    """Newest-first list of capture records with a fixed capacity.

    Optionally mirrored to a JSON file so the list survives restarts.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, path: Optional[Union[str, Path]] = None):
        """Initialize the log.

        Args:
            capacity: Maximum number of records kept; older ones are evicted
            path: JSON file the log is persisted to, if any
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.path = Path(path) if path else None
        self._records: List[CaptureRecord] = []
        self._callbacks: List[Callable[[CaptureRecord], None]] = []

    @property
    def records(self) -> List[CaptureRecord]:
        return list(self._records)

    def add_callback(self, callback: Callable[[CaptureRecord], None]) -> None:
        """Add callback to be called for each recorded capture.

        Args:
            callback: Function to call with the CaptureRecord
        """
        self._callbacks.append(callback)

    async def add(self, record: CaptureRecord) -> None:
        """Record a completed capture, evicting the oldest beyond capacity."""
        self._records.insert(0, record)
        del self._records[self.capacity:]

        if self.path is not None:
            try:
                await self.save()
            except OSError as e:
                logger.warning(f"Could not persist recent captures to {self.path}: {e}")

        for callback in self._callbacks:
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Error in recent captures callback: {e}")

    async def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([record.to_dict() for record in self._records], indent=2)
        async with aiofiles.open(self.path, 'w', encoding='utf-8') as f:
            await f.write(payload)

    async def load(self) -> List[CaptureRecord]:
        """Load persisted records; a missing or corrupt file yields an empty log."""
        if self.path is None or not self.path.exists():
            return self.records

        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                raw = json.loads(await f.read())
            records = [CaptureRecord(**item) for item in raw]
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable recent captures file {self.path}: {e}")
            return self.records

        self._records = records[:self.capacity]
        return self.records

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
