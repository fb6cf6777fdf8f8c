"""JobDispatcher — priority-ordered asyncio worker pool.

Cancellation is cooperative: :meth:`JobDispatcher.request_cancel` only sets a
flag that the running handler checks at its own checkpoints.  Work in flight
is never interrupted from the outside.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Awaitable, Callable

from jobs.models import ExportJob, JobStatus

logger = logging.getLogger(__name__)


class CancelToken:
    """Handed to a handler so it can poll for a cancel request."""

    def __init__(self, dispatcher: JobDispatcher, job_id: str):
        self._dispatcher = dispatcher
        self.job_id = job_id

    @property
    def cancelled(self) -> bool:
        return self._dispatcher.is_cancel_requested(self.job_id)


JobHandler = Callable[[str, CancelToken], Awaitable[None]]


class JobDispatcher:
    def __init__(self, handler: JobHandler, workers: int = 2):
        self._handler = handler
        self._size = workers
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        # job id -> sequence number of its newest queue entry
        self._latest: dict[str, int] = {}
        self._cancel_requested: set[str] = set()
        self._tasks: list[asyncio.Task] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._work(n), name=f"export-worker-{n}")
            for n in range(self._size)
        ]
        logger.info("Dispatcher started", extra={"workers": self._size})

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Dispatcher stopped")

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    # ── Public API ───────────────────────────────────────────────────────────

    def enqueue(self, job: ExportJob) -> None:
        """Queue a pending job. Urgent first, then creation order.

        Enqueueing a job that is already queued replaces its earlier entry,
        which is how a priority change takes effect.
        """
        if job.status != JobStatus.PENDING:
            raise ValueError(f"Only pending jobs can be enqueued (job {job.id} is {job.status.value})")
        self._cancel_requested.discard(job.id)
        seq = next(self._seq)
        self._latest[job.id] = seq
        self._queue.put_nowait((job.priority.rank, job.created_at.timestamp(), seq, job.id))
        logger.info(
            "Job enqueued",
            extra={"job_id": job.id, "priority": job.priority.value, "queued": self.queued},
        )

    def request_cancel(self, job_id: str) -> None:
        self._cancel_requested.add(job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        return job_id in self._cancel_requested

    @property
    def queued(self) -> int:
        return len(self._latest)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _work(self, n: int) -> None:
        while True:
            *_, seq, job_id = await self._queue.get()
            live = self._latest.get(job_id) == seq
            if live:
                del self._latest[job_id]
            try:
                if not live:
                    logger.debug("Skipping superseded queue entry", extra={"job_id": job_id, "worker": n})
                    continue
                if self.is_cancel_requested(job_id):
                    logger.info("Skipping cancelled job", extra={"job_id": job_id, "worker": n})
                    continue
                await self._handler(job_id, CancelToken(self, job_id))
            except Exception:
                logger.exception("Job handler crashed", extra={"job_id": job_id, "worker": n})
            finally:
                if live:
                    self._cancel_requested.discard(job_id)
                self._queue.task_done()
