"""Non-blocking progress channel between the pipeline and a sink."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass

from keyword_universe.integrations.base import ProgressSink
from keyword_universe.schemas.expansion import ProgressUpdate

logger = logging.getLogger(__name__)


@dataclass
class BatchProgress:
    """Reported after each unit of batched work finishes, in completion order.

    A unit is a metrics batch, an intent batch or one expanded parent.
    """

    tier: str | None
    completed_batches: int
    total_batches: int
    keywords_processed: int
    succeeded: bool


BatchCallback = Callable[[BatchProgress], Awaitable[None]]


class ProgressReporter:
    """Bounded queue drained by a background consumer task.

    ``publish`` never waits: when the queue is full the oldest pending
    update is dropped so the sink always sees the latest state. Sink
    errors are logged and do not reach the pipeline.
    """

    def __init__(self, sink: ProgressSink | None, max_pending: int = 256) -> None:
        self.sink = sink
        self._queue: asyncio.Queue[ProgressUpdate | None] = asyncio.Queue(maxsize=max(1, max_pending))
        self._consumer: asyncio.Task[None] | None = None
        self.published = 0
        self.dropped = 0
        self.delivered = 0
        self.sink_errors = 0
        self.last_update: ProgressUpdate | None = None

    async def start(self) -> None:
        if self.sink is None or self._consumer is not None:
            return
        self._consumer = asyncio.create_task(self._drain(), name="progress-reporter")

    def publish(self, update: ProgressUpdate) -> None:
        self.last_update = update
        self.published += 1
        if self.sink is None:
            return
        while True:
            try:
                self._queue.put_nowait(update)
                return
            except asyncio.QueueFull:
                with suppress(asyncio.QueueEmpty):
                    self._queue.get_nowait()
                    self._queue.task_done()
                    self.dropped += 1

    async def close(self, timeout: float = 5.0) -> None:
        """Flush pending updates and stop the consumer."""
        if self._consumer is None:
            return
        try:
            await asyncio.wait_for(self._shutdown(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Progress sink did not drain in time", extra={"pending": self._queue.qsize()})
            self._consumer.cancel()
            with suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None

    async def _shutdown(self) -> None:
        assert self._consumer is not None
        await self._queue.put(None)
        await self._consumer

    async def _drain(self) -> None:
        while True:
            update = await self._queue.get()
            try:
                if update is None:
                    return
                await self._deliver(update)
            finally:
                self._queue.task_done()

    async def _deliver(self, update: ProgressUpdate) -> None:
        assert self.sink is not None
        try:
            outcome = self.sink(update)
            if inspect.isawaitable(outcome):
                await outcome
            self.delivered += 1
        except Exception as exc:
            self.sink_errors += 1
            logger.warning(
                "Progress sink failed",
                extra={"run_id": update.run_id, "stage": update.stage, "error": str(exc)},
            )
