"""Operator slash commands for reminders and scheduled jobs."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from uuid import uuid4

from harness_pilot.orchestrator.scheduler import Job, JobKind, ProactiveScheduler
from harness_pilot.storage.common import utc_now

Notify = Callable[[str], Awaitable[None]]

REMIND_USAGE = "Usage: /remind <message> in <time> (e.g., /remind 'deploy' in 30m)"
CRON_USAGE = "Usage: /cron list | /cron remove <job_id>"

_REMIND_RE = re.compile(r"^(?P<message>.*\S)\s+in\s+(?P<duration>\d+[smhd])\s*$", re.IGNORECASE)
_DURATION_RE = re.compile(r"^(?P<value>\d+)(?P<unit>[smhd])$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(raw: str) -> timedelta:
    """Parse ``30s``, ``10m``, ``2h`` or ``1d``."""

    match = _DURATION_RE.match(raw.strip())
    if match is None:
        raise ValueError(f"Invalid duration: {raw!r}")
    return timedelta(seconds=int(match.group("value")) * _UNIT_SECONDS[match.group("unit").lower()])


def date_to_cron(moment: datetime) -> str:
    return f"{moment.minute} {moment.hour} {moment.day} {moment.month} *"


def _strip_quotes(text: str) -> str:
    stripped = text.strip()
    if len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in {'"', "'"}:
        return stripped[1:-1].strip()
    return stripped


def handle_remind_command(
    scheduler: ProactiveScheduler,
    args: str,
    notify: Notify,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> str:
    match = _REMIND_RE.match(args.strip())
    if match is None:
        return REMIND_USAGE
    message = _strip_quotes(match.group("message"))
    if not message:
        return REMIND_USAGE

    trigger_at = clock() + parse_duration(match.group("duration"))
    job_id = f"remind_{uuid4().hex[:6]}"

    async def _remind() -> None:
        await notify(f"Reminder: {message}")

    scheduler.add_job(
        Job(
            job_id=job_id,
            name=job_id,
            kind=JobKind.ONE_SHOT,
            handler=_remind,
            trigger_at=trigger_at,
            cron_expression=date_to_cron(trigger_at),
            description=f"Reminder: {message}",
        ),
    )
    return f'Reminder set ({job_id}): "{message}" at {trigger_at:%Y-%m-%d %H:%M:%S} UTC.'


def handle_schedule_command(args: str) -> str:
    return "Scheduling arbitrary tasks is not supported yet; use /remind <message> in <time>."


def handle_cron_list(scheduler: ProactiveScheduler) -> str:
    jobs = scheduler.list_jobs()
    if not jobs:
        return "No scheduled jobs active."
    lines = ["Scheduled jobs:"]
    for job in jobs:
        schedule = job.cron_expression or (
            f"every {job.interval_seconds:g}s" if job.interval_seconds else "-"
        )
        state = "ON" if job.enabled else "OFF"
        label = job.description or job.name
        lines.append(f"- {job.job_id}: {label} ({schedule}) [{state}]")
    return "\n".join(lines)


def handle_cron_remove(scheduler: ProactiveScheduler, args: str) -> str:
    job_id = args.strip()
    if not job_id:
        return "Usage: /cron remove <job_id>"
    if scheduler.remove_job(job_id):
        return f"Removed job: {job_id}"
    return f"Job not found: {job_id}"


def handle_cron_command(scheduler: ProactiveScheduler, args: str) -> str:
    subcommand, _, rest = args.strip().partition(" ")
    if subcommand == "list":
        return handle_cron_list(scheduler)
    if subcommand == "remove":
        return handle_cron_remove(scheduler, rest)
    return CRON_USAGE
