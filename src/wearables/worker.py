"""Bounded asyncio worker pool for deferred webhook processing.

Webhook handlers acknowledge the provider first and submit the processing
job here.  The queue is bounded: ``submit`` returns False when it is full so
the handler can answer 503 and let the provider redeliver.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger("wearsync.wearables.worker")

Job = Callable[[], Awaitable[Any]]


class WebhookWorkerPool:
    """Fixed number of worker tasks draining one bounded queue.

    Args:
        workers:   Number of concurrent worker tasks.
        max_queue: Maximum number of queued (not yet started) jobs.
    """

    def __init__(self, workers: int = 4, max_queue: int = 1000) -> None:
        self.workers = max(1, workers)
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max(1, max_queue))
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"webhook-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info("Webhook worker pool started (%d workers)", self.workers)

    def submit(self, job: Job) -> bool:
        """Queue a job.  Returns False if the queue is full."""
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("Webhook queue full (%d jobs), rejecting", self._queue.qsize())
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain the queue (bounded by ``timeout``), then cancel the workers."""
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Webhook queue not drained after %.0fs; %d job(s) dropped",
                timeout,
                self._queue.qsize(),
            )
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info(
            "Webhook worker pool stopped (processed=%d failed=%d)", self.processed, self.failed
        )

    async def _run(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception("Webhook job failed on worker %d", index)
            finally:
                self._queue.task_done()
