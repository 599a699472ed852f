from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .service_config import DEFAULT_INTERVAL_MS
from .service_models import ScheduledJobView
from .service_queue import ConcurrencyLimiter

logger = logging.getLogger("service")

Clock = Callable[[], dt.datetime]
Sleep = Callable[[float], Awaitable[None]]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class ScheduledJob:
    test_name: str
    interval_ms: int
    scheduled_at: dt.datetime
    last_run: Optional[dt.datetime] = None
    timer: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def next_run(self) -> dt.datetime:
        return (self.last_run or self.scheduled_at) + dt.timedelta(milliseconds=self.interval_ms)

    def view(self) -> ScheduledJobView:
        return ScheduledJobView(
            test_name=self.test_name,
            interval_ms=self.interval_ms,
            last_run=self.last_run,
            next_run=self.next_run,
        )


class Scheduler:
    """
    Per-test repeating timers feeding a ConcurrencyLimiter.

    Timers only tick between start() and stop(). Each tick calls
    limiter.submit() on its own; the limiter decides whether the run
    starts, waits or is coalesced.
    """

    def __init__(
        self,
        limiter: ConcurrencyLimiter,
        *,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        default_interval_ms: int = DEFAULT_INTERVAL_MS,
    ):
        self.limiter = limiter
        self.clock = clock
        self._sleep = sleep
        self.default_interval_ms = default_interval_ms
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def is_scheduled(self, test_name: str) -> bool:
        return test_name in self._jobs

    def get(self, test_name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(test_name)

    async def start(self) -> None:
        self._running = True
        for job in self._jobs.values():
            self._arm(job)
        logger.info("[scheduler] started with %s job(s)", len(self._jobs))

    async def stop(self) -> None:
        self._running = False
        timers = [job.timer for job in self._jobs.values() if job.timer is not None]
        for job in self._jobs.values():
            job.timer = None
        await self._cancel_timers(timers)
        logger.info("[scheduler] stopped")

    async def _cancel_timers(self, timers: list[asyncio.Task]) -> None:
        for timer in timers:
            timer.cancel()
        for timer in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    def _arm(self, job: ScheduledJob) -> None:
        if job.timer is None or job.timer.done():
            job.timer = asyncio.create_task(self._tick_loop(job), name=f"schedule:{job.test_name}")

    async def _tick_loop(self, job: ScheduledJob) -> None:
        while True:
            await self._sleep(job.interval_ms / 1000.0)
            job.last_run = self.clock()
            logger.info("[scheduler] trigger %s", job.test_name)
            try:
                await self.limiter.submit(job.test_name)
            except Exception as exc:
                logger.error("[scheduler] submit failed for %s: %r", job.test_name, exc)

    async def schedule(self, test_name: str, interval_ms: Optional[int] = None) -> ScheduledJob:
        """Create or replace the repeating timer of a test."""
        interval = int(interval_ms or self.default_interval_ms)
        previous = self._jobs.pop(test_name, None)
        if previous is not None and previous.timer is not None:
            await self._cancel_timers([previous.timer])

        job = ScheduledJob(test_name=test_name, interval_ms=interval, scheduled_at=self.clock())
        self._jobs[test_name] = job
        if self._running:
            self._arm(job)
        logger.info("[scheduler] %s every %sms, next run %s", test_name, interval, job.next_run.isoformat())
        return job

    async def cancel(self, test_name: str) -> bool:
        """Stop future triggers and drop queued ones. An in-flight run is left alone."""
        job = self._jobs.pop(test_name, None)
        if job is None:
            return False
        if job.timer is not None:
            await self._cancel_timers([job.timer])
        await self.limiter.remove_all(test_name)
        logger.info("[scheduler] cancelled %s", test_name)
        return True

    def next_run_time(self, test_name: str) -> Optional[dt.datetime]:
        job = self._jobs.get(test_name)
        return job.next_run if job else None
