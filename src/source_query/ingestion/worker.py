"""Bounded background worker pool for ingestion runs."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from source_query.config import get_settings

logger = structlog.get_logger()

Job = Callable[[], Awaitable[Any]]


class WorkerPool:
    """
    Fixed number of asyncio workers draining a job queue.

    `submit` never blocks the caller; the returned future resolves with the
    job's result or exception. A failing job does not stop its worker.
    """

    def __init__(self, size: int | None = None, name: str = "ingest"):
        self.size = size or get_settings().ingest_workers
        self.name = name
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def started(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self):
        """Spawn the workers on the running event loop."""
        if self.started:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"{self.name}-worker-{n}")
            for n in range(self.size)
        ]
        logger.info("worker_pool_started", pool=self.name, workers=self.size)

    def submit(self, job: Job) -> asyncio.Future:
        """Queue a job and return a future for its result."""
        if not self.started:
            self.start()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        return future

    async def join(self):
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def shutdown(self, drain: bool = True):
        """Stop the workers, finishing queued jobs first when *drain* is set."""
        if not self.started:
            return
        if drain:
            await self.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        # Jobs left behind by a non-draining shutdown never run
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
            self._queue.task_done()

        self._workers = []
        self._queue = None
        logger.info("worker_pool_stopped", pool=self.name)

    async def _worker(self, n: int):
        while True:
            job, future = await self._queue.get()
            try:
                result = await job()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                logger.error("worker_job_failed", pool=self.name, worker=n, error=str(e))
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()
