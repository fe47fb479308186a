"""Unit tests for the non-blocking progress channel."""

from __future__ import annotations

import asyncio

import pytest

from keyword_universe.schemas.expansion import ProgressUpdate
from keyword_universe.services.progress import ProgressReporter


def _update(step: str, percent: float = 10.0) -> ProgressUpdate:
    return ProgressUpdate(
        run_id="run-1",
        stage="enrichment",
        current_tier="dream100",
        current_step=step,
        progress_percent=percent,
    )


@pytest.mark.asyncio
async def test_updates_are_delivered_in_order() -> None:
    received: list[str] = []
    reporter = ProgressReporter(lambda update: received.append(update.current_step))

    await reporter.start()
    for step in ("a", "b", "c"):
        reporter.publish(_update(step))
    await reporter.close()

    assert received == ["a", "b", "c"]
    assert reporter.delivered == 3
    assert reporter.dropped == 0


@pytest.mark.asyncio
async def test_async_sink_is_awaited() -> None:
    received: list[str] = []

    async def _sink(update: ProgressUpdate) -> None:
        await asyncio.sleep(0)
        received.append(update.current_step)

    reporter = ProgressReporter(_sink)
    await reporter.start()
    reporter.publish(_update("a"))
    await reporter.close()

    assert received == ["a"]


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_updates() -> None:
    received: list[str] = []
    reporter = ProgressReporter(lambda update: received.append(update.current_step), max_pending=2)

    await reporter.start()
    # No await between publishes, so the consumer cannot drain in between
    for step in ("1", "2", "3", "4", "5"):
        reporter.publish(_update(step))
    await reporter.close()

    assert received == ["4", "5"]
    assert reporter.dropped == 3
    assert reporter.published == 5
    assert reporter.last_update.current_step == "5"


@pytest.mark.asyncio
async def test_sink_errors_are_counted_not_raised() -> None:
    def _sink(update: ProgressUpdate) -> None:
        raise RuntimeError("sink exploded")

    reporter = ProgressReporter(_sink)
    await reporter.start()
    reporter.publish(_update("a"))
    reporter.publish(_update("b"))
    await reporter.close()

    assert reporter.sink_errors == 2
    assert reporter.delivered == 0


@pytest.mark.asyncio
async def test_stuck_sink_never_blocks_publisher() -> None:
    never = asyncio.Event()

    async def _sink(update: ProgressUpdate) -> None:
        await never.wait()

    reporter = ProgressReporter(_sink, max_pending=3)
    await reporter.start()
    for i in range(50):
        reporter.publish(_update(str(i)))
    await reporter.close(timeout=0.05)

    assert reporter.published == 50
    assert reporter.dropped >= 47
    assert reporter.delivered == 0


@pytest.mark.asyncio
async def test_without_sink_updates_are_only_tracked() -> None:
    reporter = ProgressReporter(None)

    await reporter.start()
    reporter.publish(_update("a", 50.0))
    await reporter.close()

    assert reporter.published == 1
    assert reporter.last_update.progress_percent == 50.0
