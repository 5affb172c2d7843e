"""Bounded-concurrency execution of page jobs."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence

from ..log_utils import get_logger
from .errors import JobCancelled
from .models import PageFailed, PageJob, PageOk, PageResult

LOGGER = get_logger("pdf_image_service.pool")


class BoundedJobPool:
    """Run blocking page workers with at most ``limit`` in flight.

    Every ``run`` gets its own executor so concurrent requests never share
    worker threads. Jobs are admitted in the order given; they may finish
    in any order. The worker never raises past the pool: each job yields
    exactly one :class:`PageOk` or :class:`PageFailed`.
    """

    def __init__(self, limit: int, *, name: str = "pages") -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._name = name

    @property
    def limit(self) -> int:
        return self._limit

    async def run(
        self,
        jobs: Sequence[PageJob],
        worker: Callable[[PageJob], PageOk],
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[PageResult]:
        if not jobs:
            return []

        loop = asyncio.get_running_loop()
        pending: asyncio.Queue[PageJob] = asyncio.Queue()
        for job in jobs:
            pending.put_nowait(job)
        results: dict[int, PageResult] = {}
        executor = ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix=f"{self._name}-job")

        async def runner() -> None:
            while cancel is None or not cancel.is_set():
                try:
                    job = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[job.index] = await loop.run_in_executor(executor, worker, job)
                except Exception as exc:
                    LOGGER.warning("%s job %d failed: %s", self._name, job.index, exc)
                    results[job.index] = PageFailed(job.index, exc)

        try:
            await asyncio.gather(*(runner() for _ in range(min(self._limit, len(jobs)))))
        except asyncio.CancelledError:
            # running threads cannot be preempted; let them finish on their own
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        skipped = [job.index for job in jobs if job.index not in results]
        if skipped:
            LOGGER.info("%s pool cancelled; %d job(s) never started", self._name, len(skipped))
        return [
            results.get(job.index) or PageFailed(job.index, JobCancelled("job was not started"))
            for job in jobs
        ]
