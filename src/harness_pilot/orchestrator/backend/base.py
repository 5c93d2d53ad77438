"""Executor and availability interfaces consumed by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from harness_pilot.orchestrator.models import HarnessAvailability, HarnessOutcome


@dataclass(slots=True)
class HarnessRunRequest:
    """Inputs required to execute one harness invocation."""

    harness_id: str
    instruction: str
    workspace: Path
    task_id: str | None = None


@dataclass(slots=True)
class HarnessRunResult:
    """In-band outcome from a harness that actually ran."""

    status: HarnessOutcome
    output: str
    exit_code: int | None
    files_modified: tuple[str, ...]
    started_at: datetime
    completed_at: datetime
    question: str | None = None
    timed_out: bool = False


class HarnessUnreachableError(RuntimeError):
    """Transport-level failure: the harness could not be started at all."""

    def __init__(self, harness_id: str, message: str) -> None:
        super().__init__(message)
        self.harness_id = harness_id


class HarnessExecutor(Protocol):
    """Protocol implemented by harness runners."""

    async def run(self, request: HarnessRunRequest) -> HarnessRunResult:
        """Run one harness invocation; may block for as long as the harness runs."""


class AvailabilityOracle(Protocol):
    def check(self, harness_id: str) -> HarnessAvailability: ...
