"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from harness_pilot.config import Settings
from harness_pilot.orchestrator.backend import CliHarnessExecutor, CommandAvailability
from harness_pilot.orchestrator.dispatcher import FallbackDispatcher
from harness_pilot.orchestrator.intent import (
    ChatCompletionsClassifier,
    IntentClassifier,
    TermMatchClassifier,
)
from harness_pilot.orchestrator.mode_handlers import build_default_handlers
from harness_pilot.orchestrator.models import HarnessDescriptor, TaskStatus
from harness_pilot.orchestrator.modes import Mode, ModeManager
from harness_pilot.orchestrator.polling_loader import load_polling_jobs
from harness_pilot.orchestrator.repository import OrchestratorRepository
from harness_pilot.orchestrator.scheduler import ProactiveScheduler
from harness_pilot.orchestrator.session import Notify, OperatorSession

EXIT_WORDS = frozenset({"/quit", "/exit"})


@dataclass(slots=True)
class SendCommand:
    """CLI input for a single operator message."""

    db_path: Path | None
    message: str
    workspace: Path | None = None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the interactive operator loop."""

    db_path: Path | None
    input_stream: TextIO
    emit: Callable[[str], None]
    workspace: Path | None = None
    polling_file: Path | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ModeCommand:
    db_path: Path | None
    set_mode: str | None = None


@dataclass(slots=True)
class HarnessesCommand:
    db_path: Path | None


class OrchestratorCliController:
    """Coordinates operator-session and inspection CLI operations."""

    def send(self, command: SendCommand) -> list[str]:
        settings = _settings(command.db_path, workspace=command.workspace)
        notifications: list[str] = []

        async def _notify(text: str) -> None:
            notifications.append(text)

        async def _run(repository: OrchestratorRepository) -> list[str]:
            session = build_session(settings=settings, repository=repository, notify=_notify)
            return await session.handle(command.message)

        with _repository(settings) as repository:
            replies = asyncio.run(_run(repository))
        return [*replies, *notifications]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = _settings(command.db_path, workspace=command.workspace)
        polling_file = command.polling_file or settings.polling_file
        with _repository(settings) as repository:
            handled = asyncio.run(
                _serve_loop(
                    settings=settings,
                    repository=repository,
                    input_stream=command.input_stream,
                    emit=command.emit,
                    polling_file=polling_file,
                ),
            )
        return [f"Session closed after {handled} message(s)."]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if command.status:
                tasks = repository.list_by_status(TaskStatus(command.status.upper()))
                tasks = tasks[: command.limit]
            else:
                tasks = repository.list_recent(limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} agent={task.agent} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Agent: {task.agent}",
            f"Prompt: {task.prompt}",
            f"Args: {' '.join(task.args) or '-'}",
            f"Output: {task.output or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def mode(self, command: ModeCommand) -> list[str]:
        settings = _settings(command.db_path)

        async def _run(repository: OrchestratorRepository) -> list[str]:
            manager = ModeManager(repository, build_default_handlers())
            if command.set_mode:
                target = Mode(command.set_mode.upper())
                await manager.transition_to(target, "Set from command line")
            state = manager.get_state()
            previous = state.previous_mode.value if state.previous_mode else "-"
            return [
                f"Mode: {state.mode.value}",
                f"Since: {state.since.isoformat()}",
                f"Previous: {previous}",
            ]

        with _repository(settings) as repository:
            return asyncio.run(_run(repository))

    def harnesses(self, command: HarnessesCommand) -> list[str]:
        settings = _settings(command.db_path)
        availability = CommandAvailability(settings.command_templates())
        lines = [f"Harnesses: {len(settings.harnesses)}"]
        for descriptor in settings.descriptors():
            status = availability.check(descriptor.harness_id)
            state = "available" if status.available else f"unavailable ({status.reason})"
            lines.append(
                f"  {descriptor.harness_id} priority={descriptor.fallback_priority} {state}",
            )
        return lines


def build_session(
    *,
    settings: Settings,
    repository: OrchestratorRepository,
    notify: Notify,
    scheduler: ProactiveScheduler | None = None,
) -> OperatorSession:
    """Wire one operator session; must be called inside the running loop."""

    descriptors = settings.descriptors()
    templates = settings.command_templates()
    mode_manager = ModeManager(repository, build_default_handlers())
    dispatcher = FallbackDispatcher(
        repository=repository,
        mode_manager=mode_manager,
        executor=CliHarnessExecutor(
            templates,
            timeout_seconds=settings.execution_timeout_seconds,
        ),
        descriptors=descriptors,
        availability=CommandAvailability(templates),
        workspace=settings.workspace,
    )
    return OperatorSession(
        mode_manager=mode_manager,
        dispatcher=dispatcher,
        scheduler=scheduler or ProactiveScheduler(),
        classifier=build_classifier(settings=settings, descriptors=descriptors),
        repository=repository,
        notify=notify,
    )


def build_classifier(
    *,
    settings: Settings,
    descriptors: tuple[HarnessDescriptor, ...],
) -> IntentClassifier:
    local = TermMatchClassifier(descriptors, guard_terms=settings.guard_terms)
    if not settings.classifier.enabled:
        return local
    return ChatCompletionsClassifier(
        descriptors,
        api_key=settings.classifier.api_key,
        model=settings.classifier.model,
        base_url=settings.classifier.base_url,
        timeout_seconds=settings.classifier.timeout_seconds,
        guard_classifier=local,
    )


async def _serve_loop(
    *,
    settings: Settings,
    repository: OrchestratorRepository,
    input_stream: TextIO,
    emit: Callable[[str], None],
    polling_file: Path,
) -> int:
    async def _notify(text: str) -> None:
        emit(text)

    scheduler = ProactiveScheduler()
    session = build_session(
        settings=settings,
        repository=repository,
        notify=_notify,
        scheduler=scheduler,
    )
    load_polling_jobs(polling_file, scheduler, session.inject)
    scheduler.start()
    loop = asyncio.get_running_loop()
    handled = 0
    try:
        while True:
            line = await loop.run_in_executor(None, input_stream.readline)
            if not line:
                break
            text = line.strip()
            if text.lower() in EXIT_WORDS:
                break
            if not text:
                continue
            handled += 1
            for reply in await session.handle(text):
                emit(reply)
    finally:
        scheduler.stop()
        await scheduler.join()
    return handled


def _settings(db_path: Path | None, *, workspace: Path | None = None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if workspace is not None:
        settings.workspace = workspace
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
