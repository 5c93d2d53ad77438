from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from harness_pilot.orchestrator.backend.base import (
    HarnessRunRequest,
    HarnessRunResult,
    HarnessUnreachableError,
)
from harness_pilot.orchestrator.dispatcher import FallbackDispatcher
from harness_pilot.orchestrator.mode_handlers import build_default_handlers
from harness_pilot.orchestrator.models import (
    ActionPlan,
    DispatchStatus,
    HarnessAvailability,
    HarnessOutcome,
    TaskStatus,
)
from harness_pilot.orchestrator.modes import Mode, ModeManager
from harness_pilot.orchestrator.repository import OrchestratorRepository
from harness_pilot.orchestrator.routing import default_descriptors

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Fallback Dispatch"),
]


class ScriptedExecutor:
    """Return queued outcomes per harness and record every request."""

    def __init__(self, outcomes: dict[str, list[HarnessRunResult | Exception]]) -> None:
        self.outcomes = {harness: list(items) for harness, items in outcomes.items()}
        self.requests: list[HarnessRunRequest] = []

    async def run(self, request: HarnessRunRequest) -> HarnessRunResult:
        self.requests.append(request)
        outcome = self.outcomes[request.harness_id].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _result(
    status: HarnessOutcome,
    output: str = "Done.",
    *,
    question: str | None = None,
    exit_code: int = 0,
) -> HarnessRunResult:
    now = datetime.now(tz=UTC)
    return HarnessRunResult(
        status=status,
        output=output,
        exit_code=exit_code,
        files_modified=(),
        started_at=now,
        completed_at=now,
        question=question,
    )


def _plan(target: str = "claude", instruction: str = "fix the login bug") -> ActionPlan:
    return ActionPlan(
        target_harness=target,
        args=(instruction,),
        explanation=f"Forwarding to {target}",
        prompt=instruction,
    )


def _dispatcher(
    repository: OrchestratorRepository,
    executor: ScriptedExecutor,
    workspace: Path,
    available: Iterable[str] = ("claude", "gemini", "copilot"),
) -> tuple[FallbackDispatcher, ModeManager]:
    allowed = set(available)
    manager = ModeManager(repository, build_default_handlers())
    dispatcher = FallbackDispatcher(
        repository=repository,
        mode_manager=manager,
        executor=executor,
        descriptors=default_descriptors(),
        availability=lambda harness_id: harness_id in allowed,
        workspace=workspace,
    )
    return dispatcher, manager


def test_target_harness_handles_plan_when_available(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor({"gemini": [_result(HarnessOutcome.COMPLETED, "Explained.")]})
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    result = asyncio.run(dispatcher.dispatch(_plan("gemini", "explain the router")))

    assert result.status is DispatchStatus.COMPLETED
    assert result.harness_id == "gemini"
    assert result.output == "Explained."
    assert [request.harness_id for request in executor.requests] == ["gemini"]
    assert executor.requests[0].instruction == "explain the router"
    assert executor.requests[0].workspace == tmp_path
    assert manager.mode is Mode.IDLE


def test_falls_back_to_copilot_when_higher_priorities_unavailable(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor({"copilot": [_result(HarnessOutcome.COMPLETED)]})
    dispatcher, manager = _dispatcher(repository, executor, tmp_path, available=["copilot"])

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.COMPLETED
    assert result.harness_id == "copilot"
    assert [(item.harness_id, item.available) for item in result.attempts] == [
        ("claude", False),
        ("gemini", False),
        ("copilot", True),
    ]
    stored = repository.get_task(result.task.task_id)
    assert stored.agent == "copilot"
    assert stored.status is TaskStatus.COMPLETED
    assert [request.harness_id for request in executor.requests] == ["copilot"]
    assert manager.mode is Mode.IDLE


def test_no_task_is_created_when_every_harness_is_unavailable(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor({})
    dispatcher, manager = _dispatcher(repository, executor, tmp_path, available=[])

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.UNAVAILABLE
    assert result.task is None
    assert result.harness_id is None
    assert "All harnesses unavailable" in result.detail
    assert repository.list_recent() == []
    assert executor.requests == []
    assert manager.mode is Mode.IDLE


def test_in_band_failure_is_not_retried_elsewhere(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {"claude": [_result(HarnessOutcome.FAILED, "tests failed", exit_code=1)]},
    )
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.FAILED
    assert result.harness_id == "claude"
    assert result.is_terminal_failure
    assert "exited with code 1" in result.detail
    assert repository.get_task(result.task.task_id).status is TaskStatus.FAILED
    assert [request.harness_id for request in executor.requests] == ["claude"]
    assert manager.mode is Mode.IDLE


def test_unreachable_harness_moves_to_next_in_chain(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {
            "claude": [HarnessUnreachableError("claude", "Harness command not found: claude")],
            "gemini": [_result(HarnessOutcome.COMPLETED)],
        },
    )
    dispatcher, _ = _dispatcher(repository, executor, tmp_path)

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.COMPLETED
    assert result.harness_id == "gemini"
    details = repository.get_task_details(result.task.task_id)
    assert details.task.agent == "gemini"
    assert details.task.status is TaskStatus.COMPLETED
    assert "agent_reassigned" in [event.event_type for event in details.events]


def test_unreachable_chain_exhaustion_fails_recorded_task(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {
            harness: [HarnessUnreachableError(harness, f"{harness} missing")]
            for harness in ("claude", "gemini", "copilot")
        },
    )
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.UNAVAILABLE
    assert result.task is not None
    assert repository.get_task(result.task.task_id).status is TaskStatus.FAILED
    assert len(executor.requests) == 3
    assert manager.mode is Mode.IDLE


def test_clarification_waits_and_resumes_on_same_harness(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {
            "claude": [
                _result(
                    HarnessOutcome.NEEDS_CLARIFICATION,
                    "Working on it\nWhich branch should I use?",
                    question="Which branch should I use?",
                ),
                _result(HarnessOutcome.COMPLETED, "Merged into main."),
            ],
        },
    )
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    async def scenario():
        waiting = await dispatcher.dispatch(_plan("claude"))
        mode_while_waiting = manager.get_state()
        answered = await dispatcher.answer_clarification("use main")
        return waiting, mode_while_waiting, answered

    waiting, state, answered = asyncio.run(scenario())

    assert waiting.status is DispatchStatus.WAITING
    assert waiting.question == "Which branch should I use?"
    assert state.mode is Mode.WAITING
    assert state.data["task_id"] == waiting.task.task_id
    assert state.data["harness_id"] == "claude"
    assert answered.status is DispatchStatus.COMPLETED
    assert answered.task.task_id == waiting.task.task_id
    assert "Operator answer: use main" in executor.requests[1].instruction
    assert "Which branch should I use?" in executor.requests[1].instruction
    assert repository.get_task(waiting.task.task_id).status is TaskStatus.COMPLETED
    assert manager.mode is Mode.IDLE


def test_waiting_task_stays_in_progress_until_cancelled(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {"claude": [_result(HarnessOutcome.NEEDS_CLARIFICATION, question="Proceed?")]},
    )
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    async def scenario():
        waiting = await dispatcher.dispatch(_plan("claude"))
        status_while_waiting = repository.get_task(waiting.task.task_id).status
        cancelled = await dispatcher.cancel_waiting()
        return status_while_waiting, cancelled

    status_while_waiting, cancelled = asyncio.run(scenario())

    assert status_while_waiting is TaskStatus.IN_PROGRESS
    assert cancelled.status is TaskStatus.FAILED
    assert cancelled.output == "Cancelled by operator"
    assert manager.mode is Mode.IDLE


def test_answer_without_waiting_task_is_rejected(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    dispatcher, _ = _dispatcher(repository, ScriptedExecutor({}), tmp_path)

    with pytest.raises(RuntimeError, match="No task is waiting"):
        asyncio.run(dispatcher.answer_clarification("main"))


def test_per_call_availability_overrides_default(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor({"gemini": [_result(HarnessOutcome.COMPLETED)]})
    dispatcher, _ = _dispatcher(repository, executor, tmp_path)

    def only_gemini(harness_id: str) -> HarnessAvailability:
        if harness_id == "gemini":
            return HarnessAvailability(True)
        return HarnessAvailability(False, "quota exhausted")

    result = asyncio.run(dispatcher.dispatch(_plan("claude"), availability=only_gemini))

    assert result.harness_id == "gemini"
    assert result.attempts[0].reason == "quota exhausted"


def test_executor_crash_fails_task_without_fallback(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor({"claude": [ValueError("bad output encoding")]})
    dispatcher, manager = _dispatcher(repository, executor, tmp_path)

    result = asyncio.run(dispatcher.dispatch(_plan("claude")))

    assert result.status is DispatchStatus.FAILED
    assert result.harness_id == "claude"
    assert "bad output encoding" in result.detail
    assert len(executor.requests) == 1
    assert manager.mode is Mode.IDLE


class UnwritableTaskStore(OrchestratorRepository):
    """Task writes fail; the meta store keeps working."""

    def create_task(self, payload):
        raise OperationalError("INSERT INTO tasks", {}, Exception("disk I/O error"))

    def update_status(self, task_id, status, output=None):
        raise OperationalError("UPDATE tasks", {}, Exception("disk I/O error"))


@pytest.fixture()
def unwritable_store(tmp_path: Path):
    store = UnwritableTaskStore(tmp_path / "unwritable.db")
    store.init_schema()
    yield store
    store.close()


def test_unsaved_waiting_task_can_still_be_answered(
    unwritable_store: UnwritableTaskStore,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {
            "claude": [
                _result(HarnessOutcome.NEEDS_CLARIFICATION, question="Which branch?"),
                _result(HarnessOutcome.COMPLETED, "Merged."),
            ],
        },
    )
    dispatcher, manager = _dispatcher(unwritable_store, executor, tmp_path)

    async def scenario():
        waiting = await dispatcher.dispatch(_plan("claude"))
        answered = await dispatcher.answer_clarification("main")
        return waiting, answered

    waiting, answered = asyncio.run(scenario())

    assert waiting.status is DispatchStatus.WAITING
    assert unwritable_store.get_task(waiting.task.task_id) is None
    assert answered.status is DispatchStatus.COMPLETED
    assert answered.task.task_id == waiting.task.task_id
    assert answered.task.status is TaskStatus.COMPLETED
    assert manager.mode is Mode.IDLE


def test_unsaved_waiting_task_can_still_be_cancelled(
    unwritable_store: UnwritableTaskStore,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(
        {"claude": [_result(HarnessOutcome.NEEDS_CLARIFICATION, question="Proceed?")]},
    )
    dispatcher, manager = _dispatcher(unwritable_store, executor, tmp_path)

    async def scenario():
        waiting = await dispatcher.dispatch(_plan("claude"))
        cancelled = await dispatcher.cancel_waiting()
        return waiting, cancelled

    waiting, cancelled = asyncio.run(scenario())

    assert cancelled.task_id == waiting.task.task_id
    assert cancelled.status is TaskStatus.FAILED
    assert manager.mode is Mode.IDLE
