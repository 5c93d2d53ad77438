from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import allure
import pytest

from harness_pilot.orchestrator.scheduler import (
    Job,
    JobKind,
    JobNotFoundError,
    ProactiveScheduler,
)

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Proactive Scheduler"),
]


class Counter:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.calls = 0
        self.fail = fail
        self.delay = delay

    async def __call__(self) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("handler exploded")


class OverlapCounter(Counter):
    def __init__(self, *, delay: float) -> None:
        super().__init__(delay=delay)
        self.active = 0
        self.max_active = 0

    async def __call__(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await super().__call__()
        finally:
            self.active -= 1


def _interval(job_id: str, handler: Counter, seconds: float, **kwargs) -> Job:
    return Job(
        job_id=job_id,
        name=job_id,
        kind=JobKind.INTERVAL,
        handler=handler,
        interval_seconds=seconds,
        **kwargs,
    )


def _one_shot(job_id: str, handler: Counter, in_seconds: float) -> Job:
    return Job(
        job_id=job_id,
        name=job_id,
        kind=JobKind.ONE_SHOT,
        handler=handler,
        trigger_at=datetime.now(tz=UTC) + timedelta(seconds=in_seconds),
    )


def test_interval_job_fires_repeatedly() -> None:
    handler = Counter()

    async def scenario() -> None:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("poll", handler, 0.05))
        scheduler.start()
        await asyncio.sleep(0.3)
        scheduler.stop()
        await scheduler.join()

    asyncio.run(scenario())

    assert handler.calls >= 2


def test_poll_restarts_the_interval() -> None:
    handler = Counter()

    async def scenario() -> tuple[bool, int, int]:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("poll", handler, 0.5))
        scheduler.start()
        await asyncio.sleep(0.3)
        succeeded = await scheduler.poll("poll")
        await asyncio.sleep(0.35)
        calls_before_rearm = handler.calls
        await asyncio.sleep(0.3)
        scheduler.stop()
        await scheduler.join()
        return succeeded, calls_before_rearm, handler.calls

    succeeded, calls_before_rearm, calls_after_rearm = asyncio.run(scenario())

    assert succeeded is True
    assert calls_before_rearm == 1
    assert calls_after_rearm == 2


def test_poll_records_last_run_and_reports_failure() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    scheduler = ProactiveScheduler(clock=lambda: now)
    scheduler.add_job(_interval("poll", Counter(fail=True), 60))

    succeeded = asyncio.run(scheduler.poll("poll"))

    job = scheduler.get_job("poll")
    assert succeeded is False
    assert job.last_run == now
    assert job.last_error == "handler exploded"
    assert job.enabled is True


def test_poll_unknown_job_raises() -> None:
    scheduler = ProactiveScheduler()

    with pytest.raises(JobNotFoundError):
        asyncio.run(scheduler.poll("missing"))


def test_one_shot_is_consumed_after_success() -> None:
    handler = Counter()

    async def scenario() -> list[Job]:
        scheduler = ProactiveScheduler()
        scheduler.start()
        scheduler.add_job(_one_shot("remind_abc123", handler, 0.05))
        await asyncio.sleep(0.25)
        scheduler.stop()
        return scheduler.list_jobs()

    remaining = asyncio.run(scenario())

    assert handler.calls == 1
    assert remaining == []


def test_one_shot_is_consumed_after_failure() -> None:
    handler = Counter(fail=True)

    async def scenario() -> list[Job]:
        scheduler = ProactiveScheduler()
        scheduler.start()
        scheduler.add_job(_one_shot("remind_def456", handler, 0.05))
        await asyncio.sleep(0.25)
        scheduler.stop()
        return scheduler.list_jobs()

    remaining = asyncio.run(scenario())

    assert handler.calls == 1
    assert remaining == []


def test_overdue_one_shot_fires_immediately_on_start() -> None:
    handler = Counter()

    async def scenario() -> None:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_one_shot("late", handler, -30))
        scheduler.start()
        await asyncio.sleep(0.1)
        scheduler.stop()

    asyncio.run(scenario())

    assert handler.calls == 1


def test_failing_interval_job_keeps_running() -> None:
    handler = Counter(fail=True)

    async def scenario() -> Job | None:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("flaky", handler, 0.05))
        scheduler.start()
        await asyncio.sleep(0.3)
        scheduler.stop()
        await scheduler.join()
        return scheduler.get_job("flaky")

    job = asyncio.run(scenario())

    assert handler.calls >= 2
    assert job is not None
    assert job.enabled is True
    assert job.last_error == "handler exploded"


def test_stop_cancels_pending_timers() -> None:
    handler = Counter()

    async def scenario() -> bool:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("poll", handler, 0.05))
        scheduler.start()
        scheduler.stop()
        await asyncio.sleep(0.2)
        return scheduler.is_running

    running = asyncio.run(scenario())

    assert running is False
    assert handler.calls == 0


def test_in_flight_handler_is_not_rearmed_after_stop() -> None:
    handler = Counter(delay=0.15)

    async def scenario() -> None:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("slow", handler, 0.05))
        scheduler.start()
        await asyncio.sleep(0.1)
        scheduler.stop()
        await scheduler.join()
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert handler.calls == 1


def test_disabled_job_does_not_fire_until_enabled() -> None:
    handler = Counter()

    async def scenario() -> tuple[int, int]:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("poll", handler, 0.05, enabled=False))
        scheduler.start()
        await asyncio.sleep(0.15)
        before = handler.calls
        assert scheduler.enable_job("poll") is True
        await asyncio.sleep(0.15)
        scheduler.stop()
        await scheduler.join()
        return before, handler.calls

    before, after = asyncio.run(scenario())

    assert before == 0
    assert after >= 1


def test_replacing_a_job_cancels_the_old_timer() -> None:
    old = Counter()
    new = Counter()

    async def scenario() -> None:
        scheduler = ProactiveScheduler()
        scheduler.start()
        scheduler.add_job(_interval("poll", old, 0.1))
        scheduler.add_job(_interval("poll", new, 0.1))
        await asyncio.sleep(0.15)
        scheduler.stop()
        await scheduler.join()

    asyncio.run(scenario())

    assert old.calls == 0
    assert new.calls == 1


def test_remove_and_disable_unknown_jobs() -> None:
    scheduler = ProactiveScheduler()
    scheduler.add_job(_interval("poll", Counter(), 60))

    assert scheduler.remove_job("missing") is False
    assert scheduler.disable_job("missing") is False
    assert scheduler.enable_job("missing") is False
    assert scheduler.remove_job("poll") is True
    assert scheduler.list_jobs() == []


def test_list_jobs_returns_copies() -> None:
    scheduler = ProactiveScheduler()
    scheduler.add_job(_interval("poll", Counter(), 60))

    scheduler.list_jobs()[0].enabled = False

    assert scheduler.get_job("poll").enabled is True


def test_pending_jobs_reports_due_interval_jobs() -> None:
    current = [datetime(2026, 10, 18, 12, 0, tzinfo=UTC)]
    scheduler = ProactiveScheduler(clock=lambda: current[0])
    scheduler.add_job(_interval("poll", Counter(), 60))
    scheduler.add_job(_interval("off", Counter(), 60, enabled=False))

    assert [job.job_id for job in scheduler.pending_jobs()] == ["poll"]

    asyncio.run(scheduler.poll("poll"))
    current[0] += timedelta(seconds=30)
    assert scheduler.pending_jobs() == []

    current[0] += timedelta(seconds=31)
    assert [job.job_id for job in scheduler.pending_jobs()] == ["poll"]


def test_job_validation() -> None:
    with pytest.raises(ValueError, match="positive interval"):
        Job(job_id="bad", name="bad", kind=JobKind.INTERVAL, handler=Counter())
    with pytest.raises(ValueError, match="trigger_at"):
        Job(job_id="bad", name="bad", kind=JobKind.ONE_SHOT, handler=Counter())


def test_poll_waits_for_a_timer_run_in_flight() -> None:
    handler = OverlapCounter(delay=0.2)

    async def scenario() -> bool:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("j1", handler, 0.05))
        scheduler.start()
        await asyncio.sleep(0.08)
        polled = await scheduler.poll("j1")
        scheduler.stop()
        await scheduler.join()
        return polled

    polled = asyncio.run(scenario())

    assert polled is True
    assert handler.calls >= 2
    assert handler.max_active == 1


def test_concurrent_polls_run_one_at_a_time() -> None:
    handler = OverlapCounter(delay=0.05)

    async def scenario() -> list[bool]:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_interval("j1", handler, 60))
        return await asyncio.gather(scheduler.poll("j1"), scheduler.poll("j1"))

    results = asyncio.run(scenario())

    assert results == [True, True]
    assert handler.calls == 2
    assert handler.max_active == 1


def test_poll_of_one_shot_consumed_in_flight_returns_that_run() -> None:
    handler = OverlapCounter(delay=0.1)

    async def scenario() -> tuple[bool, list[Job]]:
        scheduler = ProactiveScheduler()
        scheduler.add_job(_one_shot("once", handler, 0))
        scheduler.start()
        await asyncio.sleep(0.02)
        polled = await scheduler.poll("once")
        scheduler.stop()
        return polled, scheduler.list_jobs()

    polled, remaining = asyncio.run(scenario())

    assert polled is True
    assert handler.calls == 1
    assert remaining == []


def test_next_run_rejects_a_job_stripped_of_its_schedule() -> None:
    interval = _interval("poll", Counter(), 30)
    interval.interval_seconds = None
    one_shot = _one_shot("once", Counter(), 30)
    one_shot.trigger_at = None

    with pytest.raises(ValueError, match="needs a positive interval"):
        interval.next_run(datetime.now(tz=UTC))
    with pytest.raises(ValueError, match="needs trigger_at"):
        one_shot.next_run(datetime.now(tz=UTC))
