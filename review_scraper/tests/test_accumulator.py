"""
Unit tests for run-wide dedup and batched accumulation.
"""

from __future__ import annotations

import pytest

from review_scraper.accumulator import ReviewAccumulator
from review_scraper.crawl.records import recognize_reviews
from review_scraper.models import ReviewRecord

SOURCE = "https://www.flipkart.com/acme/product-reviews/itm1abc"


class ListSink:
    def __init__(self) -> None:
        self.batches: list[list[dict]] = []

    def append(self, records: list[dict]) -> None:
        self.batches.append(records)

    @property
    def rows(self) -> list[dict]:
        return [row for batch in self.batches for row in batch]


def _record(review_id: str) -> ReviewRecord:
    return ReviewRecord(review_id=review_id, source_url=SOURCE, text=f"text {review_id}", rating=4.0)


@pytest.mark.asyncio
async def test_duplicates_are_discarded_across_calls():
    sink = ListSink()
    acc = ReviewAccumulator(sink, wanted_count=10)

    assert await acc.add_many([_record("a"), _record("b")]) == 2
    assert await acc.add_many([_record("b"), _record("c")]) == 1
    await acc.flush()

    assert [row["review_id"] for row in sink.rows] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_same_review_from_strict_and_loose_channels_stored_once():
    strict_state = {"value": {"type": "ProductReviewValue", "id": "rev-1", "text": "Nice", "rating": 5}}
    loose_payload = {"reviews": [{"id": "rev-1", "reviewText": "Nice", "stars": 5}]}
    sink = ListSink()
    acc = ReviewAccumulator(sink, wanted_count=10)

    await acc.add_many(recognize_reviews(strict_state, SOURCE))
    await acc.add_many(recognize_reviews(loose_payload, SOURCE))
    await acc.flush()

    assert [row["review_id"] for row in sink.rows] == ["rev-1"]


@pytest.mark.asyncio
async def test_quota_refuses_further_records():
    sink = ListSink()
    acc = ReviewAccumulator(sink, wanted_count=3)

    added = await acc.add_many([_record(str(i)) for i in range(5)])

    assert added == 3
    assert acc.quota_reached
    assert acc.remaining == 0
    assert acc.add(_record("late")) is False


@pytest.mark.asyncio
async def test_flushes_at_batch_size_and_on_force():
    sink = ListSink()
    acc = ReviewAccumulator(sink, wanted_count=100, batch_size=25)

    await acc.add_many([_record(str(i)) for i in range(30)])
    assert [len(b) for b in sink.batches] == [25]
    assert len(acc.buffer) == 5

    assert await acc.flush() == 5
    assert [len(b) for b in sink.batches] == [25, 5]
    assert acc.buffer == []
    assert len(acc.seen_ids) == 30


@pytest.mark.asyncio
async def test_flush_on_empty_buffer_writes_nothing():
    sink = ListSink()
    acc = ReviewAccumulator(sink, wanted_count=5)

    assert await acc.flush() == 0
    assert sink.batches == []


def test_wanted_count_floored_at_one():
    assert ReviewAccumulator(ListSink(), wanted_count=0).wanted_count == 1
