import asyncio
from datetime import datetime, timezone

import pytest

from conftest import FakePoller, FakeProcessor
from poll_and_process import read_checkpoint
from utils.services import run_poll_cycle
from utils.ticket_processor import ProcessingOutcome


@pytest.mark.asyncio
async def test_counts_each_outcome_and_keeps_going_after_failures():
    poller = FakePoller(["a", "b", "c", "d"])
    proc = FakeProcessor({
        "a": ProcessingOutcome.PROCESSED,
        "b": RuntimeError("storage down"),
        "c": ProcessingOutcome.NEEDS_REVIEW,
        "d": ProcessingOutcome.ALREADY_PROCESSED,
    })
    since = datetime(2025, 3, 1, tzinfo=timezone.utc)

    summary = await run_poll_cycle(poller, proc, since=since, limit=25, concurrency=2)

    assert poller.calls == [{"since": since, "unprocessed_only": True, "limit": 25}]
    assert sorted(proc.seen) == ["a", "b", "c", "d"]
    assert (summary.found, summary.processed, summary.needs_review, summary.already_processed, summary.failed) \
        == (4, 1, 1, 1, 1)
    assert summary.failures == {"b": "storage down"}
    assert summary.as_dict()["next_checkpoint"] == summary.started_at.isoformat()


@pytest.mark.asyncio
async def test_stop_prevents_new_tickets():
    stop = asyncio.Event()
    proc = FakeProcessor({t: ProcessingOutcome.PROCESSED for t in "abc"}, on_call=lambda _: stop.set())

    summary = await run_poll_cycle(FakePoller(["a", "b", "c"]), proc, concurrency=1, stop=stop)

    assert proc.seen == ["a"]
    assert summary.processed == 1
    assert summary.not_started == 2


def test_read_checkpoint():
    assert read_checkpoint("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    assert read_checkpoint("2025-03-01T12:00:00").tzinfo is timezone.utc
    assert read_checkpoint("yesterday") is None
    assert read_checkpoint(None) is None
