"""In-process proactive scheduler for polling jobs and reminders.

Jobs live in memory only. Each enabled job owns at most one pending timer on
the running event loop; a job is never armed twice. Interval jobs rearm
after the handler returns, so a slow handler delays its own next run rather
than overlapping with it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from harness_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[None]]


class JobKind(str, Enum):
    INTERVAL = "interval"
    ONE_SHOT = "one_shot"


class JobNotFoundError(LookupError):
    """Raised when a job id is not registered."""


@dataclass(slots=True)
class Job:
    """Scheduled unit of work.

    Interval jobs need ``interval_seconds``; one-shot jobs need ``trigger_at``.
    ``cron_expression`` is descriptive and shown in listings only.
    """

    job_id: str
    name: str
    kind: JobKind
    handler: JobHandler
    interval_seconds: float | None = None
    trigger_at: datetime | None = None
    cron_expression: str | None = None
    description: str = ""
    enabled: bool = True
    last_run: datetime | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        if self.kind is JobKind.INTERVAL:
            if self.interval_seconds is None or self.interval_seconds <= 0:
                raise ValueError(f"Interval job {self.job_id} needs a positive interval")
        elif self.trigger_at is None:
            raise ValueError(f"One-shot job {self.job_id} needs trigger_at")

    def next_run(self, now: datetime) -> datetime:
        if self.kind is JobKind.ONE_SHOT:
            if self.trigger_at is None:
                raise ValueError(f"One-shot job {self.job_id} needs trigger_at")
            return self.trigger_at
        if self.interval_seconds is None:
            raise ValueError(f"Interval job {self.job_id} needs a positive interval")
        base = self.last_run or now
        return base + timedelta(seconds=self.interval_seconds)


class ProactiveScheduler:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task[bool]] = set()
        self._active: dict[str, asyncio.Task[bool]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Arm every enabled job on the running loop."""

        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._running = True
        for job in self._jobs.values():
            if job.enabled:
                self._arm(job)
        logger.info("Scheduler started with %d job(s)", len(self._jobs))

    def stop(self) -> None:
        """Cancel every pending timer. Handlers already running are not rearmed."""

        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        logger.info("Scheduler stopped")

    async def join(self) -> None:
        """Wait for handlers that are currently running."""

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def add_job(self, job: Job) -> None:
        """Register or replace ``job``; a replaced job's timer is cancelled."""

        self._cancel_timer(job.job_id)
        self._jobs[job.job_id] = job
        logger.info("Scheduled job %s (%s)", job.job_id, job.kind.value)
        if self._running and job.enabled:
            self._arm(job)

    def remove_job(self, job_id: str) -> bool:
        self._cancel_timer(job_id)
        removed = self._jobs.pop(job_id, None)
        if removed is not None:
            logger.info("Removed job %s", job_id)
        return removed is not None

    def enable_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.enabled = True
        if self._running and job_id not in self._timers:
            self._arm(job)
        return True

    def disable_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.enabled = False
        self._cancel_timer(job_id)
        return True

    def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job is not None else None

    def list_jobs(self) -> list[Job]:
        return [dataclasses.replace(job) for job in self._jobs.values()]

    def pending_jobs(self) -> list[Job]:
        """Enabled interval jobs whose next run is already due."""

        now = self._clock()
        return [
            dataclasses.replace(job)
            for job in self._jobs.values()
            if job.enabled
            and job.kind is JobKind.INTERVAL
            and (job.last_run is None or job.next_run(now) <= now)
        ]

    async def poll(self, job_id: str) -> bool:
        """Run a job now and restart its interval; returns handler success.

        A run of the same job that is already in flight is awaited first, so
        a handler never runs twice at once. If that run consumed a one-shot
        job, its outcome is returned instead of running again.
        """

        if job_id not in self._jobs:
            raise JobNotFoundError(f"Job not found: {job_id}")
        previous: asyncio.Task[bool] | None = None
        while job_id in self._active:
            previous = self._active[job_id]
            await asyncio.wait({previous})
        job = self._jobs.get(job_id)
        if job is None:
            if previous is None or previous.cancelled():
                raise JobNotFoundError(f"Job not found: {job_id}")
            return previous.result()
        self._cancel_timer(job_id)
        return await self._start_run(job, asyncio.get_running_loop())

    def _arm(self, job: Job) -> None:
        if self._loop is None:
            return
        self._cancel_timer(job.job_id)
        now = self._clock()
        delay = max(0.0, (job.next_run(now) - now).total_seconds())
        self._timers[job.job_id] = self._loop.call_later(delay, self._fire, job.job_id)
        logger.debug("Armed job %s in %.1fs", job.job_id, delay)

    def _cancel_timer(self, job_id: str) -> None:
        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or not job.enabled or self._loop is None:
            return
        if job_id in self._active:
            logger.debug("Job %s is still running; timer skipped", job_id)
            return
        self._start_run(job, self._loop)

    def _start_run(self, job: Job, loop: asyncio.AbstractEventLoop) -> asyncio.Task[bool]:
        task = loop.create_task(self._run_job(job))
        self._active[job.job_id] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(lambda done: self._release(job.job_id, done))
        return task

    def _release(self, job_id: str, task: asyncio.Task[bool]) -> None:
        if self._active.get(job_id) is task:
            del self._active[job_id]

    async def _run_job(self, job: Job) -> bool:
        succeeded = await self._execute(job)
        self._after_run(job)
        return succeeded

    async def _execute(self, job: Job) -> bool:
        logger.info("Running job %s", job.job_id)
        try:
            await job.handler()
        except Exception as error:
            logger.exception("Job %s failed", job.job_id)
            job.last_error = str(error) or error.__class__.__name__
            return False
        finally:
            job.last_run = self._clock()
        job.last_error = None
        return True

    def _after_run(self, job: Job) -> None:
        current = self._jobs.get(job.job_id)
        if job.kind is JobKind.ONE_SHOT:
            if current is job:
                del self._jobs[job.job_id]
                logger.debug("One-shot job %s consumed", job.job_id)
            return
        if self._running and job.enabled and current is job:
            self._arm(job)
