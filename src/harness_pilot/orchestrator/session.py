"""Operator-facing conversation loop.

``OperatorSession.handle`` is the single entry point for operator text. The
current mode decides what the text means before any classification happens:
while guarding it is a confirmation, while waiting it is an answer.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime

from harness_pilot.orchestrator.commands import (
    handle_cron_command,
    handle_remind_command,
    handle_schedule_command,
)
from harness_pilot.orchestrator.dispatcher import FallbackDispatcher
from harness_pilot.orchestrator.intent import BUILTIN_TOOLS, IntentClassifier
from harness_pilot.orchestrator.models import ActionPlan, DispatchResult, DispatchStatus
from harness_pilot.orchestrator.modes import Mode, ModeManager
from harness_pilot.orchestrator.repository import OrchestratorRepository
from harness_pilot.orchestrator.scheduler import ProactiveScheduler
from harness_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

Notify = Callable[[str], Awaitable[None]]

BUSY_REPLY = "A task is already running; one task at a time. Try again when it finishes."
FAILURE_REPLY = "Failed to process your request. Please try again."
REMIND_NEEDS_SCHEDULER = (
    "Reminders only fire while the scheduler runs; set them from `harness-pilot serve`."
)
OUTPUT_PREVIEW_CHARS = 2_000

HELP_TEXT = """Send a coding request in plain language and it is routed to a harness.

Commands:
  /status                     recent tasks and current mode
  /mode                       current mode details
  /remind <message> in <N>    reminder after N s/m/h/d
  /cron list                  scheduled jobs
  /cron remove <job_id>       remove a scheduled job
  /cancel                     give up on a task waiting for your answer
  /help                       this text"""


class OperatorSession:
    def __init__(  # noqa: PLR0913
        self,
        *,
        mode_manager: ModeManager,
        dispatcher: FallbackDispatcher,
        scheduler: ProactiveScheduler,
        classifier: IntentClassifier,
        repository: OrchestratorRepository,
        notify: Notify,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.mode_manager = mode_manager
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.classifier = classifier
        self.repository = repository
        self.notify = notify
        self._clock = clock
        self._queue: deque[tuple[str, str]] = deque()
        self._busy = False

    @property
    def queued(self) -> list[tuple[str, str]]:
        return list(self._queue)

    async def handle(self, text: str) -> list[str]:
        """Process one operator message and return the replies."""

        message = text.strip()
        if not message:
            return []
        try:
            return await self._route(message)
        except Exception:
            logger.exception("Failed to handle operator message")
            return [FAILURE_REPLY]

    async def inject(self, text: str, source: str) -> list[str]:
        """Submit a scheduler-originated request.

        While a task is running or awaiting input the request is queued and
        replayed after the next terminal dispatch.
        """

        if self._is_busy():
            logger.info("Queueing %s request while busy: %s", source, text)
            self._queue.append((text, source))
            return []
        logger.info("Running %s request: %s", source, text)
        replies = await self.handle(text)
        await self._notify_all(source, replies)
        return replies

    async def _route(self, message: str) -> list[str]:
        mode = self.mode_manager.mode
        if mode is Mode.GUARDING:
            return await self._handle_guarded(message)
        if message.startswith("/"):
            return await self._handle_command(message)
        if mode is Mode.WAITING:
            return await self._handle_waiting(message)
        if self._is_busy():
            return [BUSY_REPLY]

        # Busy from classification until the dispatch settles.
        self._busy = True
        try:
            replies = await self._classify_and_act(message)
        finally:
            self._busy = False
        await self._drain_queue()
        return replies

    async def _classify_and_act(self, message: str) -> list[str]:
        plan = await self.classifier.classify(message)
        logger.info("Action plan: %s -> %s", plan.target_harness, plan.explanation)
        if plan.target_harness in BUILTIN_TOOLS:
            return self._builtin(plan.target_harness)
        if plan.requires_confirmation:
            return await self._request_confirmation(plan)
        return format_dispatch_result(await self.dispatcher.dispatch(plan))

    async def _handle_guarded(self, message: str) -> list[str]:
        if self._busy:
            return [BUSY_REPLY]
        payload = self.mode_manager.get_state().data.get("plan")
        self._busy = True
        try:
            verdict = await self.mode_manager.process_input(message)
            if verdict.decision != "confirm":
                replies = [verdict.reply] if verdict.reply else []
            elif not isinstance(payload, dict):
                replies = ["Nothing left to confirm."]
            else:
                plan = ActionPlan.from_payload(payload)
                result = await self.dispatcher.dispatch(plan)
                replies = [f"Confirmed: {plan.explanation}", *format_dispatch_result(result)]
        finally:
            self._busy = False
        await self._drain_queue()
        return replies

    async def _handle_waiting(self, message: str) -> list[str]:
        if self._busy:
            return [BUSY_REPLY]
        self._busy = True
        try:
            result = await self.dispatcher.answer_clarification(message)
        finally:
            self._busy = False
        replies = format_dispatch_result(result)
        await self._drain_queue()
        return replies

    async def _handle_command(self, message: str) -> list[str]:
        command, _, args = message.partition(" ")
        command = command.lower()
        if command == "/remind":
            if not self.scheduler.is_running:
                return [REMIND_NEEDS_SCHEDULER]
            return [handle_remind_command(self.scheduler, args, self.notify, clock=self._clock)]
        if command == "/cron":
            return [handle_cron_command(self.scheduler, args)]
        if command == "/schedule":
            return [handle_schedule_command(args)]
        if command == "/status":
            return self._builtin("status")
        if command == "/help":
            return self._builtin("help")
        if command == "/mode":
            return self._mode_lines()
        if command == "/cancel":
            if self.mode_manager.mode is not Mode.WAITING:
                return ["No task is waiting for an answer."]
            task = await self.dispatcher.cancel_waiting()
            await self._drain_queue()
            return [f"Task {task.task_id} cancelled."]
        return [f"Unknown command: {command}. Send /help for the list."]

    async def _request_confirmation(self, plan: ActionPlan) -> list[str]:
        action = f"{plan.explanation} ({plan.target_harness}: {plan.instruction})"
        await self.mode_manager.transition_to(
            Mode.GUARDING,
            "Request requires confirmation",
            {"action": action, "plan": plan.to_payload()},
        )
        return [
            f"This request needs confirmation: {action}",
            "Reply yes to proceed or no to cancel.",
        ]

    async def _drain_queue(self) -> None:
        while self._queue and not self._is_busy():
            text, source = self._queue.popleft()
            logger.info("Replaying queued %s request: %s", source, text)
            replies = await self.handle(text)
            await self._notify_all(source, replies)

    async def _notify_all(self, source: str, replies: list[str]) -> None:
        for reply in replies:
            try:
                await self.notify(f"[{source}] {reply}")
            except Exception:
                logger.exception("Failed to deliver notification from %s", source)

    def _is_busy(self) -> bool:
        return self._busy or self.mode_manager.mode in {
            Mode.WORKING,
            Mode.WAITING,
            Mode.GUARDING,
        }

    def _builtin(self, tool: str) -> list[str]:
        if tool == "help":
            return [HELP_TEXT]
        lines = self._mode_lines()
        tasks = self.repository.list_recent(limit=5)
        if not tasks:
            lines.append("No tasks yet.")
            return lines
        lines.append("Recent tasks:")
        lines.extend(
            f"- {task.task_id} [{task.status.value}] {task.agent}: {_shorten(task.prompt, 60)}"
            for task in tasks
        )
        return lines

    def _mode_lines(self) -> list[str]:
        state = self.mode_manager.get_state()
        line = f"Mode: {state.mode.value} since {state.since.isoformat()}"
        if state.previous_mode is not None:
            line += f" (previous: {state.previous_mode.value})"
        return [line]


def format_dispatch_result(result: DispatchResult) -> list[str]:
    task_id = result.task.task_id if result.task else None
    if result.status is DispatchStatus.COMPLETED:
        lines = [f"Task {task_id} completed by {result.harness_id}."]
        if result.files_modified:
            lines.append("Files modified: " + ", ".join(result.files_modified))
        if result.output:
            lines.append(_shorten(result.output, OUTPUT_PREVIEW_CHARS))
        return lines
    if result.status is DispatchStatus.WAITING:
        return [
            f"Task {task_id}: {result.harness_id} needs clarification:",
            result.question or "",
            "Reply with your answer, or /cancel to give up.",
        ]
    if result.status is DispatchStatus.UNAVAILABLE and result.task is None:
        return [f"No harness available. {result.detail}"]
    lines = [f"Task {task_id} failed: {result.detail}"]
    if result.output:
        lines.append(_shorten(result.output, OUTPUT_PREVIEW_CHARS))
    return lines


def _shorten(text: str, limit: int) -> str:
    flat = text.strip()
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3].rstrip() + "..."
