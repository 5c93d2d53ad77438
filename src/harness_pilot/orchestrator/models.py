"""Domain models for the orchestration control core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
}


class TaskNotFoundError(LookupError):
    """Raised when a task id has no stored record."""


class TaskTransitionError(RuntimeError):
    """Raised when a status update would regress or overwrite a terminal task."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id} cannot move from {current.value} to {requested.value}",
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


@dataclass(slots=True)
class TaskCreate:
    """Input payload for recording a dispatched task."""

    agent: str
    prompt: str
    args: tuple[str, ...] = ()
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot; never aliases storage."""

    task_id: str
    status: TaskStatus
    agent: str
    prompt: str
    args: tuple[str, ...]
    output: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(frozen=True, slots=True)
class HarnessDescriptor:
    """Static routing configuration for one coding-agent harness."""

    harness_id: str
    fallback_priority: int
    trigger_terms: tuple[str, ...] = ()
    avoid_terms: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ActionPlan:
    """Classified request: which harness to target and with what instruction."""

    target_harness: str
    args: tuple[str, ...]
    explanation: str
    prompt: str = ""
    requires_confirmation: bool = False

    @property
    def instruction(self) -> str:
        joined = " ".join(arg for arg in self.args if arg.strip()).strip()
        return joined or self.prompt

    def to_payload(self) -> dict[str, object]:
        return {
            "target_harness": self.target_harness,
            "args": list(self.args),
            "explanation": self.explanation,
            "prompt": self.prompt,
            "requires_confirmation": self.requires_confirmation,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ActionPlan:
        return cls(
            target_harness=str(payload["target_harness"]),
            args=tuple(str(arg) for arg in payload.get("args", [])),
            explanation=str(payload.get("explanation", "")),
            prompt=str(payload.get("prompt", "")),
            requires_confirmation=bool(payload.get("requires_confirmation", False)),
        )


@dataclass(frozen=True, slots=True)
class HarnessAvailability:
    """Answer from the availability oracle for one harness."""

    available: bool
    reason: str = ""


class HarnessOutcome(str, Enum):
    """In-band result reported by a harness that actually ran."""

    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_CLARIFICATION = "needs_clarification"


@dataclass(slots=True)
class HarnessAttempt:
    """One step of the fallback walk."""

    harness_id: str
    available: bool
    reason: str = ""


class DispatchStatus(str, Enum):
    """Overall result of one dispatch call."""

    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class DispatchResult:
    """What happened to a plan; always names the handling harness, if any."""

    status: DispatchStatus
    harness_id: str | None
    task: TaskView | None
    output: str = ""
    question: str | None = None
    detail: str = ""
    attempts: list[HarnessAttempt] = field(default_factory=list)
    files_modified: tuple[str, ...] = ()

    @property
    def is_terminal_failure(self) -> bool:
        return self.status in {DispatchStatus.FAILED, DispatchStatus.UNAVAILABLE}
