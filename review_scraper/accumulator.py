"""
Run-wide dedup and accumulation: the only path from extracted records to the sink.

One instance per run is passed into every tier. The seen-set lives for the whole
run so a review found on several pages or through several channels is stored
once. Concurrent page fetches funnel their results through add_many(), which
serializes mutation under a single lock.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Protocol

from shared.logging import get_logger
from review_scraper.constants import BATCH_SIZE
from review_scraper.models import ReviewRecord

logger = get_logger(__name__)


class RecordSink(Protocol):
    def append(self, records: list[dict]) -> None: ...


class ReviewAccumulator:
    """Seen-set, bounded buffer and saved counter for one run."""

    def __init__(self, sink: RecordSink, wanted_count: int, batch_size: int = BATCH_SIZE) -> None:
        self.sink = sink
        self.wanted_count = max(1, int(wanted_count))
        self.batch_size = batch_size
        self.seen_ids: set[str] = set()
        self.buffer: list[ReviewRecord] = []
        self.total_saved = 0
        self._lock = asyncio.Lock()

    @property
    def quota_reached(self) -> bool:
        return self.total_saved >= self.wanted_count

    @property
    def remaining(self) -> int:
        return max(0, self.wanted_count - self.total_saved)

    def add(self, record: ReviewRecord) -> bool:
        """
        Buffer a record unless already seen or the quota is met.

        Returns True when the record was new and stored. Callers running
        concurrently must go through add_many().
        """
        if self.quota_reached or record.review_id in self.seen_ids:
            return False
        self.seen_ids.add(record.review_id)
        self.buffer.append(record)
        self.total_saved += 1
        return True

    def maybe_flush(self, force: bool = False) -> int:
        """
        Append the buffer to the sink at the batch threshold, or whenever forced.

        Clears the buffer, never the seen-set. Returns the number of records written.
        """
        if not self.buffer:
            return 0
        if len(self.buffer) < self.batch_size and not force:
            return 0
        batch = [record.to_dict() for record in self.buffer]
        self.sink.append(batch)
        self.buffer = []
        logger.info("accumulator.flush", records=len(batch), total_saved=self.total_saved)
        return len(batch)

    async def add_many(self, records: Iterable[ReviewRecord]) -> int:
        """Add records in order under the lock; returns how many were new."""
        added = 0
        async with self._lock:
            for record in records:
                if self.quota_reached:
                    break
                if self.add(record):
                    added += 1
                    self.maybe_flush()
        return added

    async def flush(self) -> int:
        """Forced final flush."""
        async with self._lock:
            return self.maybe_flush(force=True)
