from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from typing import Optional

from .service_jobs import JobRunner, ReplayJob
from .service_models import QueueView, SubmitResp
from .service_status import RunStatusStore

logger = logging.getLogger("service")


class ConcurrencyLimiter:
    """
    At most ``capacity`` replay jobs run at once; the rest wait in a FIFO deque.
    - submit(test): start now if a slot is free, else enqueue (or coalesce)
    - position(test): 1-based queue position or None
    - remove_all(test): drop every queued trigger of a test
    - join(): wait until nothing is active or queued
    - stop(): clear the queue and cancel active jobs
    """

    def __init__(
        self,
        capacity: int,
        runner: JobRunner,
        status_store: RunStatusStore,
        *,
        coalesce_queued: bool = True,
    ):
        self.capacity = max(1, int(capacity))
        self._runner = runner
        self._status = status_store
        self.coalesce_queued = coalesce_queued
        self._queue: deque[str] = deque()
        self._active: dict[str, ReplayJob] = {}
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = False

    # -- introspection --------------------------------------------------
    @property
    def active_jobs(self) -> list[ReplayJob]:
        return list(self._active.values())

    def is_running(self, test_name: str) -> bool:
        return any(job.test_name == test_name for job in self._active.values())

    async def position(self, test_name: str) -> Optional[int]:
        async with self._lock:
            try:
                return list(self._queue).index(test_name) + 1
            except ValueError:
                return None

    def view(self) -> QueueView:
        return QueueView(
            capacity=self.capacity,
            active=[job.test_name for job in self._active.values()],
            queued=list(self._queue),
        )

    # -- submission -------------------------------------------------------
    def _start_locked(self, test_name: str) -> ReplayJob:
        job = ReplayJob(test_name=test_name, run_id=uuid.uuid4().hex[:10])
        self._active[job.run_id] = job
        self._idle.clear()
        job.task = asyncio.create_task(self._run_job(job), name=f"replay:{test_name}:{job.run_id}")
        logger.info("[queue] started %s run_id=%s active=%s/%s", test_name, job.run_id, len(self._active), self.capacity)
        return job

    async def submit(self, test_name: str) -> SubmitResp:
        async with self._lock:
            if self._stopping:
                raise RuntimeError("limiter is stopping")
            if len(self._active) < self.capacity:
                job = self._start_locked(test_name)
                return SubmitResp(test_name=test_name, state="started", run_id=job.run_id)
            if self.coalesce_queued and test_name in self._queue:
                pos = list(self._queue).index(test_name) + 1
                logger.info("[queue] %s already queued at %s, coalescing", test_name, pos)
                return SubmitResp(test_name=test_name, state="coalesced", queue_position=pos)
            self._queue.append(test_name)
            self._idle.clear()
            pos = len(self._queue)

        logger.info("[queue] %s queued at position %s", test_name, pos)
        await self._status.mark(test_name, "queued")
        return SubmitResp(test_name=test_name, state="queued", queue_position=pos)

    async def _run_job(self, job: ReplayJob) -> int:
        code = 1
        try:
            await self._status.mark(job.test_name, "running", run_id=job.run_id)
            code = await self._runner.run(job.test_name, job.run_id)
        except asyncio.CancelledError:
            logger.warning("[queue] %s run_id=%s cancelled", job.test_name, job.run_id)
            raise
        except Exception as exc:
            logger.error("[queue] %s run_id=%s crashed: %r", job.test_name, job.run_id, exc)
        finally:
            async with self._lock:
                self._active.pop(job.run_id, None)
                if self._queue and not self._stopping:
                    self._start_locked(self._queue.popleft())
            try:
                await self._status.mark(
                    job.test_name, "done" if code == 0 else "failed", run_id=job.run_id, exit_code=code
                )
            finally:
                if not self._active and not self._queue:
                    self._idle.set()
        return code

    # -- removal / lifecycle -----------------------------------------------
    async def remove_if_present(self, test_name: str) -> bool:
        async with self._lock:
            try:
                self._queue.remove(test_name)
            except ValueError:
                return False
            if not self._active and not self._queue:
                self._idle.set()
            return True

    async def remove_all(self, test_name: str) -> int:
        async with self._lock:
            before = len(self._queue)
            self._queue = deque(t for t in self._queue if t != test_name)
            removed = before - len(self._queue)
            if not self._active and not self._queue:
                self._idle.set()
        if removed:
            logger.info("[queue] dropped %s queued trigger(s) of %s", removed, test_name)
        return removed

    async def join(self) -> None:
        await self._idle.wait()

    async def stop(self) -> None:
        async with self._lock:
            self._stopping = True
            self._queue.clear()
            tasks = [job.task for job in self._active.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._idle.set()
