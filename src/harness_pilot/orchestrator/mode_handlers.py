"""Default handlers for each declared mode."""

from __future__ import annotations

import logging
from typing import Any

from harness_pilot.orchestrator.modes import InputVerdict, Mode, ModeHandler

logger = logging.getLogger(__name__)

CONFIRM_WORDS = frozenset({"y", "yes", "confirm", "ok"})
DENY_WORDS = frozenset({"n", "no", "cancel", "stop", "deny"})


class IdleMode:
    mode = Mode.IDLE

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None:
        logger.debug("[%s] Ready for requests (from %s)", self.mode.value, previous.value)

    async def exit(self, next_mode: Mode) -> None:
        logger.debug("[%s] Switching to %s", self.mode.value, next_mode.value)

    async def process(self, text: str) -> InputVerdict:
        return InputVerdict(handled=False)


class WorkingMode:
    mode = Mode.WORKING

    def __init__(self) -> None:
        self.current_task_id: str | None = None

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None:
        self.current_task_id = data.get("task_id")
        logger.info("[%s] Executing task %s", self.mode.value, self.current_task_id)

    async def exit(self, next_mode: Mode) -> None:
        logger.info("[%s] Task %s left execution", self.mode.value, self.current_task_id)
        self.current_task_id = None

    async def process(self, text: str) -> InputVerdict:
        return InputVerdict(handled=False)


class WaitingMode:
    """Input received while waiting is the answer to the relayed question."""

    mode = Mode.WAITING

    def __init__(self) -> None:
        self.question: str | None = None

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None:
        self.question = data.get("question")
        logger.info("[%s] Awaiting operator answer: %s", self.mode.value, self.question)

    async def exit(self, next_mode: Mode) -> None:
        self.question = None

    async def process(self, text: str) -> InputVerdict:
        return InputVerdict(handled=False)


class GuardingMode:
    """Every input is a confirm or deny for the pending guarded action."""

    mode = Mode.GUARDING

    def __init__(self) -> None:
        self.pending_action: str | None = None

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None:
        self.pending_action = data.get("action") or "Unknown action"
        logger.warning("[%s] Pending authorization for %r", self.mode.value, self.pending_action)

    async def exit(self, next_mode: Mode) -> None:
        logger.info("[%s] Guard released", self.mode.value)
        self.pending_action = None

    async def process(self, text: str) -> InputVerdict:
        response = text.strip().lower()
        if response in CONFIRM_WORDS:
            return InputVerdict(
                handled=True,
                next_mode=Mode.IDLE,
                reason="Operator confirmed guarded action",
                decision="confirm",
            )
        if response in DENY_WORDS:
            return InputVerdict(
                handled=True,
                reply=f"Cancelled: {self.pending_action}",
                next_mode=Mode.IDLE,
                reason="Operator denied guarded action",
                decision="deny",
            )
        return InputVerdict(
            handled=True,
            reply=(
                f"Awaiting confirmation for: {self.pending_action}\n"
                "Reply yes to proceed or no to cancel."
            ),
        )


class RestingMode:
    mode = Mode.RESTING

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None:
        return None

    async def exit(self, next_mode: Mode) -> None:
        return None

    async def process(self, text: str) -> InputVerdict:
        return InputVerdict(handled=False)


def build_default_handlers() -> dict[Mode, ModeHandler]:
    handlers: list[ModeHandler] = [
        IdleMode(),
        WorkingMode(),
        WaitingMode(),
        GuardingMode(),
        RestingMode(),
    ]
    return {handler.mode: handler for handler in handlers}
