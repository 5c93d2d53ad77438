"""Load interval jobs from a markdown polling file.

Expected layout, one section per job::

    ### Nightly review
    - **ID:** `nightly_review`
    - **Interval:** 10m
    - **Command:** `review the open pull requests`
    - **Enabled:** true
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from harness_pilot.orchestrator.scheduler import Job, JobKind, ProactiveScheduler

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60

_ID_RE = re.compile(r"- \*\*ID:\*\* `([^`]+)`")
_INTERVAL_RE = re.compile(r"- \*\*Interval:\*\* (\w+)")
_COMMAND_RE = re.compile(r"- \*\*Command:\*\* `([^`]+)`")
_ENABLED_RE = re.compile(r"- \*\*Enabled:\*\* (true|false)", re.IGNORECASE)
_INTERVAL_VALUE_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(slots=True)
class PollingEntry:
    job_id: str
    name: str
    interval_seconds: int
    command: str
    enabled: bool = True


def parse_interval(raw: str) -> int:
    """``10m`` -> 600; unparseable values fall back to one minute."""

    match = _INTERVAL_VALUE_RE.match(raw.strip().lower())
    if match is None:
        logger.warning("Unrecognized polling interval %r, using %ss", raw, DEFAULT_INTERVAL_SECONDS)
        return DEFAULT_INTERVAL_SECONDS
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


def parse_polling_markdown(content: str) -> list[PollingEntry]:
    entries: list[PollingEntry] = []
    for section in content.split("###")[1:]:
        name = section.strip().splitlines()[0].strip() if section.strip() else ""
        id_match = _ID_RE.search(section)
        interval_match = _INTERVAL_RE.search(section)
        command_match = _COMMAND_RE.search(section)
        if not (id_match and interval_match and command_match):
            logger.debug("Skipping incomplete polling section %r", name)
            continue
        enabled_match = _ENABLED_RE.search(section)
        entries.append(
            PollingEntry(
                job_id=id_match.group(1),
                name=name or id_match.group(1),
                interval_seconds=parse_interval(interval_match.group(1)),
                command=command_match.group(1),
                enabled=enabled_match.group(1).lower() == "true" if enabled_match else True,
            ),
        )
    return entries


def load_polling_jobs(
    path: Path,
    scheduler: ProactiveScheduler,
    inject: Callable[[str, str], Awaitable[object]],
) -> list[PollingEntry]:
    """Register every entry of ``path`` as an interval job.

    Each job hands its command text to ``inject(text, source)``. A missing
    file is not an error.
    """

    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Polling file not found: %s", path)
        return []
    except OSError as error:
        logger.warning("Failed to read polling file %s: %s", path, error)
        return []

    entries = parse_polling_markdown(content)
    for entry in entries:
        scheduler.add_job(
            Job(
                job_id=entry.job_id,
                name=entry.name,
                kind=JobKind.INTERVAL,
                handler=_injecting_handler(entry, inject),
                interval_seconds=entry.interval_seconds,
                description=f"Poll: {entry.command}",
                enabled=entry.enabled,
            ),
        )
    logger.info("Loaded %d polling job(s) from %s", len(entries), path)
    return entries


def _injecting_handler(
    entry: PollingEntry,
    inject: Callable[[str, str], Awaitable[object]],
) -> Callable[[], Awaitable[None]]:
    async def _handler() -> None:
        await inject(entry.command, f"polling:{entry.job_id}")

    return _handler
