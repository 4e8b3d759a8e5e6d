from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from studio_jobs.config import settings

logger = logging.getLogger("job_runner")

JobWork = Callable[[], Awaitable[None]]


class JobTaskRunner:
    """
    Owns the detached background task of every active job.

    - at most one task per job id; a newer task for the same job waits for the previous one to finish
    - `max_concurrent` tasks do provider work at once, the rest wait for a slot
    - each task has its own error boundary: an escaped exception marks the job
      failed through `on_crash`, and `shutdown()` marks in-flight jobs through `on_interrupt`
    """

    def __init__(
        self,
        *,
        on_crash: Callable[[str, BaseException], Awaitable[None]],
        on_interrupt: Callable[[str], Awaitable[None]],
        max_concurrent: int = 0,
    ) -> None:
        self.max_concurrent = int(max_concurrent or settings.MAX_CONCURRENT_JOBS)
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._on_crash = on_crash
        self._on_interrupt = on_interrupt
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._closing = False

    def spawn(
        self,
        job_id: str,
        work: JobWork,
        *,
        on_waiting: Optional[JobWork] = None,
    ) -> "asyncio.Task[None]":
        if self._closing:
            raise RuntimeError("job runner is shutting down")

        previous = self._tasks.get(job_id)
        if previous is not None and previous.done():
            previous = None

        task = asyncio.create_task(
            self._guarded(job_id, work, on_waiting, previous),
            name=f"job:{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._forget(jid, t))
        return task

    def _forget(self, job_id: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)

    async def _guarded(
        self,
        job_id: str,
        work: JobWork,
        on_waiting: Optional[JobWork],
        previous: Optional["asyncio.Task[None]"],
    ) -> None:
        try:
            if previous is not None:
                await asyncio.wait([previous])

            if self._slots.locked() and on_waiting is not None:
                await on_waiting()

            async with self._slots:
                await work()

        except asyncio.CancelledError:
            if self._closing:
                logger.warning("job_interrupted", extra={"job_id": job_id})
                try:
                    await self._on_interrupt(job_id)
                except Exception:
                    logger.exception("job_interrupt_marking_failed", extra={"job_id": job_id})
            raise

        except Exception as e:
            logger.exception("job_unhandled_exception", extra={"job_id": job_id, "error": str(e)})
            # HARD safety: the job must not stay active without a task
            try:
                await self._on_crash(job_id, e)
            except Exception:
                logger.exception("job_fail_marking_failed", extra={"job_id": job_id})

    async def wait_idle(self) -> None:
        """Wait until no job task is running, including tasks spawned meanwhile."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def shutdown(self, *, timeout_seconds: float = 10.0) -> None:
        self._closing = True
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("job_runner_shutdown", extra={"in_flight": len(tasks)})
        for t in tasks:
            t.cancel()
        _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        if pending:
            logger.error("job_runner_shutdown_incomplete", extra={"still_running": len(pending)})
