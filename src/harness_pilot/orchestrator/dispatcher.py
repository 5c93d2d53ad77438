"""Turn classified plans into harness invocations with priority fallback.

Only unavailability moves dispatch to the next harness. A harness that ran
and reported failure produces a FAILED task; reissuing is the operator's
call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from harness_pilot.orchestrator.backend.base import (
    HarnessExecutor,
    HarnessRunRequest,
    HarnessRunResult,
    HarnessUnreachableError,
)
from harness_pilot.orchestrator.models import (
    ActionPlan,
    DispatchResult,
    DispatchStatus,
    HarnessAttempt,
    HarnessAvailability,
    HarnessDescriptor,
    HarnessOutcome,
    TaskCreate,
    TaskNotFoundError,
    TaskStatus,
    TaskTransitionError,
    TaskView,
)
from harness_pilot.orchestrator.modes import Mode, ModeManager
from harness_pilot.orchestrator.repository import OrchestratorRepository, new_task_id
from harness_pilot.orchestrator.routing import resolve_fallback_chain
from harness_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

AvailabilityCheck = Callable[[str], "bool | HarnessAvailability"]

CLARIFICATION_ANSWER_MARKER = "Operator answer:"
_TASK_WRITE_ERRORS = (SQLAlchemyError, OSError, TaskNotFoundError)


@dataclass(slots=True)
class _Selection:
    harness_id: str | None
    attempts: list[HarnessAttempt]


class FallbackDispatcher:
    """Resolve, record, and run one plan at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        mode_manager: ModeManager,
        executor: HarnessExecutor,
        descriptors: Sequence[HarnessDescriptor],
        availability: AvailabilityCheck,
        workspace: Path,
    ) -> None:
        self.repository = repository
        self.mode_manager = mode_manager
        self.executor = executor
        self.descriptors = tuple(descriptors)
        self.availability = availability
        self.workspace = workspace
        self._waiting_task: TaskView | None = None

    async def dispatch(
        self,
        plan: ActionPlan,
        availability: AvailabilityCheck | None = None,
    ) -> DispatchResult:
        """Run ``plan`` on the first available harness of its fallback chain."""

        check = availability or self.availability
        chain = resolve_fallback_chain(plan.target_harness, self.descriptors)
        selection = self._select(chain, check)
        if selection.harness_id is None:
            return self._exhausted(plan, selection.attempts)

        if selection.harness_id != plan.target_harness:
            logger.info(
                "Target harness %s unavailable; falling back to %s",
                plan.target_harness,
                selection.harness_id,
            )

        task = self._create_task(plan, selection.harness_id)
        await self.mode_manager.transition_to(
            Mode.WORKING,
            f"Dispatching task {task.task_id} to {selection.harness_id}",
            {"task_id": task.task_id, "harness_id": selection.harness_id},
        )
        task = self._record_status(task, TaskStatus.IN_PROGRESS)
        return await self._invoke(
            task=task,
            harness_id=selection.harness_id,
            instruction=plan.instruction,
            chain=chain,
            check=check,
            attempts=selection.attempts,
        )

    async def answer_clarification(
        self,
        answer: str,
        availability: AvailabilityCheck | None = None,
    ) -> DispatchResult:
        """Resume the waiting task on the harness that asked the question."""

        waiting = self._waiting_context()
        task = self._current_task(waiting)
        self._waiting_task = None
        harness_id = str(waiting["harness_id"])
        instruction = (
            f"{waiting.get('instruction', '')}\n\n"
            f"Question: {waiting.get('question', '')}\n"
            f"{CLARIFICATION_ANSWER_MARKER} {answer.strip()}"
        ).strip()
        await self.mode_manager.transition_to(
            Mode.WORKING,
            f"Operator answered question for task {task.task_id}",
            {"task_id": task.task_id, "harness_id": harness_id},
        )
        check = availability or self.availability
        return await self._invoke(
            task=task,
            harness_id=harness_id,
            instruction=instruction,
            chain=[harness_id],
            check=check,
            attempts=[HarnessAttempt(harness_id, True, "resuming after clarification")],
        )

    async def cancel_waiting(self, reason: str = "Cancelled by operator") -> TaskView:
        """Give up on the waiting task: mark it FAILED and return to IDLE."""

        waiting = self._waiting_context()
        task = self._current_task(waiting)
        self._waiting_task = None
        task = self._record_status(task, TaskStatus.FAILED, reason)
        await self.mode_manager.transition_to(Mode.IDLE, f"Task {task.task_id} cancelled")
        return task

    async def _invoke(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        harness_id: str,
        instruction: str,
        chain: list[str],
        check: AvailabilityCheck,
        attempts: list[HarnessAttempt],
    ) -> DispatchResult:
        current = harness_id
        while True:
            try:
                result = await self.executor.run(
                    HarnessRunRequest(
                        harness_id=current,
                        instruction=instruction,
                        workspace=self.workspace,
                        task_id=task.task_id,
                    ),
                )
            except HarnessUnreachableError as error:
                logger.warning("Harness %s unreachable: %s", current, error)
                attempts.append(HarnessAttempt(current, False, str(error)))
                remaining = chain[chain.index(current) + 1 :] if current in chain else []
                selection = self._select(remaining, check)
                attempts.extend(selection.attempts)
                if selection.harness_id is None:
                    return await self._finish_failed(
                        task=task,
                        harness_id=None,
                        detail=_exhausted_detail(attempts),
                        attempts=attempts,
                        status=DispatchStatus.UNAVAILABLE,
                    )
                task = self._reassign(task, selection.harness_id, str(error))
                current = selection.harness_id
                continue
            except Exception as error:
                logger.exception("Harness %s raised while running task %s", current, task.task_id)
                return await self._finish_failed(
                    task=task,
                    harness_id=current,
                    detail=f"Harness {current} crashed: {error}",
                    attempts=attempts,
                    status=DispatchStatus.FAILED,
                )
            return await self._handle_result(task, current, result, instruction, attempts)

    async def _handle_result(
        self,
        task: TaskView,
        harness_id: str,
        result: HarnessRunResult,
        instruction: str,
        attempts: list[HarnessAttempt],
    ) -> DispatchResult:
        if result.status is HarnessOutcome.NEEDS_CLARIFICATION:
            question = result.question or result.output
            self._waiting_task = task
            await self.mode_manager.transition_to(
                Mode.WAITING,
                f"Harness {harness_id} needs clarification",
                {
                    "task_id": task.task_id,
                    "harness_id": harness_id,
                    "instruction": instruction,
                    "question": question,
                },
            )
            return DispatchResult(
                status=DispatchStatus.WAITING,
                harness_id=harness_id,
                task=task,
                output=result.output,
                question=question,
                attempts=attempts,
                files_modified=result.files_modified,
            )

        if result.status is HarnessOutcome.COMPLETED:
            task = self._record_status(task, TaskStatus.COMPLETED, result.output)
            await self.mode_manager.transition_to(Mode.IDLE, f"Task {task.task_id} completed")
            return DispatchResult(
                status=DispatchStatus.COMPLETED,
                harness_id=harness_id,
                task=task,
                output=result.output,
                attempts=attempts,
                files_modified=result.files_modified,
            )

        detail = f"Harness {harness_id} exited with code {result.exit_code}"
        if result.timed_out:
            detail = f"Harness {harness_id} timed out"
        return await self._finish_failed(
            task=task,
            harness_id=harness_id,
            detail=detail,
            attempts=attempts,
            status=DispatchStatus.FAILED,
            output=result.output,
            files_modified=result.files_modified,
        )

    async def _finish_failed(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        harness_id: str | None,
        detail: str,
        attempts: list[HarnessAttempt],
        status: DispatchStatus,
        output: str = "",
        files_modified: tuple[str, ...] = (),
    ) -> DispatchResult:
        task = self._record_status(task, TaskStatus.FAILED, output or detail)
        await self.mode_manager.transition_to(Mode.IDLE, f"Task {task.task_id} failed")
        return DispatchResult(
            status=status,
            harness_id=harness_id,
            task=task,
            output=output,
            detail=detail,
            attempts=attempts,
            files_modified=files_modified,
        )

    def _select(self, chain: list[str], check: AvailabilityCheck) -> _Selection:
        attempts: list[HarnessAttempt] = []
        for harness_id in chain:
            availability = _normalize_availability(check(harness_id))
            attempts.append(HarnessAttempt(harness_id, availability.available, availability.reason))
            if availability.available:
                return _Selection(harness_id=harness_id, attempts=attempts)
            logger.info("Harness %s unavailable: %s", harness_id, availability.reason or "-")
        return _Selection(harness_id=None, attempts=attempts)

    def _exhausted(self, plan: ActionPlan, attempts: list[HarnessAttempt]) -> DispatchResult:
        detail = _exhausted_detail(attempts)
        logger.warning(
            "No harness available for plan targeting %s: %s",
            plan.target_harness,
            detail,
        )
        return DispatchResult(
            status=DispatchStatus.UNAVAILABLE,
            harness_id=None,
            task=None,
            detail=detail,
            attempts=attempts,
        )

    def _create_task(self, plan: ActionPlan, harness_id: str) -> TaskView:
        payload = TaskCreate(
            agent=harness_id,
            prompt=plan.prompt or plan.instruction,
            args=plan.args,
        )
        try:
            return self.repository.create_task(payload)
        except (SQLAlchemyError, OSError) as error:
            logger.warning("Failed to persist new task, continuing in memory: %s", error)
            now = utc_now()
            return TaskView(
                task_id=new_task_id(),
                status=TaskStatus.PENDING,
                agent=harness_id,
                prompt=payload.prompt,
                args=payload.args,
                output=None,
                created_at=now,
                updated_at=now,
            )

    def _record_status(
        self,
        task: TaskView,
        status: TaskStatus,
        output: str | None = None,
    ) -> TaskView:
        try:
            return self.repository.update_status(task.task_id, status, output)
        except TaskTransitionError:
            logger.exception("Refusing illegal status update for task %s", task.task_id)
            raise
        except _TASK_WRITE_ERRORS as error:
            logger.warning(
                "Failed to persist status %s for task %s: %s",
                status.value,
                task.task_id,
                error,
            )
            return TaskView(
                task_id=task.task_id,
                status=status,
                agent=task.agent,
                prompt=task.prompt,
                args=task.args,
                output=output if output is not None else task.output,
                created_at=task.created_at,
                updated_at=utc_now(),
            )

    def _reassign(self, task: TaskView, harness_id: str, reason: str) -> TaskView:
        try:
            return self.repository.reassign_agent(task.task_id, harness_id, reason=reason)
        except _TASK_WRITE_ERRORS as error:
            logger.warning("Failed to persist reassignment of task %s: %s", task.task_id, error)
            return TaskView(
                task_id=task.task_id,
                status=task.status,
                agent=harness_id,
                prompt=task.prompt,
                args=task.args,
                output=task.output,
                created_at=task.created_at,
                updated_at=utc_now(),
            )

    def _waiting_context(self) -> dict[str, Any]:
        state = self.mode_manager.get_state()
        if state.mode is not Mode.WAITING:
            raise RuntimeError(f"No task is waiting for clarification (mode={state.mode.value})")
        if "task_id" not in state.data or "harness_id" not in state.data:
            raise RuntimeError("Waiting mode has no task context")
        return state.data

    def _current_task(self, waiting: dict[str, Any]) -> TaskView:
        """Load the waiting task, falling back to the copy held since it asked.

        A task that was never persisted still has to be answerable and
        cancellable, otherwise the mode could not leave WAITING.
        """

        task_id = str(waiting["task_id"])
        try:
            task = self.repository.get_task(task_id)
        except (SQLAlchemyError, OSError) as error:
            logger.warning("Failed to load waiting task %s: %s", task_id, error)
            task = None
        if task is not None:
            return task
        if self._waiting_task is not None and self._waiting_task.task_id == task_id:
            return self._waiting_task

        logger.warning("Waiting task %s is not stored; continuing from mode data", task_id)
        now = utc_now()
        return TaskView(
            task_id=task_id,
            status=TaskStatus.IN_PROGRESS,
            agent=str(waiting["harness_id"]),
            prompt=str(waiting.get("instruction", "")),
            args=(),
            output=None,
            created_at=now,
            updated_at=now,
        )


def _normalize_availability(value: bool | HarnessAvailability) -> HarnessAvailability:
    if isinstance(value, HarnessAvailability):
        return value
    return HarnessAvailability(bool(value), "" if value else "reported unavailable")


def _exhausted_detail(attempts: list[HarnessAttempt]) -> str:
    if not attempts:
        return "No harnesses configured"
    tried = "; ".join(
        f"{attempt.harness_id}: {attempt.reason or 'unavailable'}"
        for attempt in attempts
        if not attempt.available
    )
    return f"All harnesses unavailable ({tried})"
