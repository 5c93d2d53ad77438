"""Behavioral mode state machine with crash-safe persistence.

The current ``ModeState`` is the only persisted snapshot. ``WORKING``,
``WAITING`` and ``GUARDING`` describe an in-flight interaction that cannot
survive an uncontrolled restart, so construction forces them back to
``IDLE`` before any handler is installed.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from harness_pilot.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

MODE_STATE_META_KEY = "mode_state"


class Mode(str, Enum):
    """Declared orchestrator modes."""

    IDLE = "IDLE"
    WORKING = "WORKING"
    WAITING = "WAITING"
    GUARDING = "GUARDING"
    RESTING = "RESTING"


UNTRUSTED_AFTER_RESTART = frozenset({Mode.WORKING, Mode.WAITING, Mode.GUARDING})


@dataclass(slots=True)
class ModeState:
    mode: Mode
    since: datetime
    previous_mode: Mode | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "mode": self.mode.value,
                "since": self.since.isoformat(),
                "previous_mode": self.previous_mode.value if self.previous_mode else None,
                "data": self.data,
            },
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> ModeState:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Persisted mode state must be a JSON object")
        previous = payload.get("previous_mode")
        data = payload.get("data") or {}
        return cls(
            mode=Mode(payload["mode"]),
            since=from_iso(str(payload["since"])),
            previous_mode=Mode(previous) if previous else None,
            data=data if isinstance(data, dict) else {},
        )


@dataclass(frozen=True, slots=True)
class ModeTransition:
    from_mode: Mode
    to_mode: Mode
    reason: str
    timestamp: datetime


@dataclass(slots=True)
class InputVerdict:
    """How the current mode interpreted one piece of operator input.

    ``handled=False`` means the input should continue to the normal request
    path. ``decision`` carries mode-specific meaning (``confirm``/``deny``
    while guarding).
    """

    handled: bool
    reply: str | None = None
    next_mode: Mode | None = None
    reason: str = ""
    decision: str | None = None


class ModeHandler(Protocol):
    """Behavior attached to one mode."""

    mode: Mode

    async def enter(self, previous: Mode, data: dict[str, Any]) -> None: ...

    async def exit(self, next_mode: Mode) -> None: ...

    async def process(self, text: str) -> InputVerdict: ...


class MetaStore(Protocol):
    def get_meta(self, key: str) -> str | None: ...

    def set_meta(self, key: str, value: str) -> None: ...


class ModeManager:
    """Owns the current mode; the single entry point for mode changes."""

    def __init__(
        self,
        meta_store: MetaStore,
        handlers: Mapping[Mode, ModeHandler],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = meta_store
        self._clock = clock
        self._history: list[ModeTransition] = []
        self._lock = asyncio.Lock()
        self._state = self._restore()
        self._handlers = _validated_handler_table(handlers)
        for mode in self._handlers:
            logger.debug("Registered mode handler: %s", mode.value)

    @property
    def mode(self) -> Mode:
        return self._state.mode

    def get_state(self) -> ModeState:
        return copy.deepcopy(self._state)

    def get_history(self) -> list[ModeTransition]:
        return list(self._history)

    def handler_for(self, mode: Mode) -> ModeHandler:
        return self._handlers[mode]

    async def transition_to(
        self,
        mode: Mode,
        reason: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Move to ``mode``; returns ``False`` if a hook failed.

        The new state is committed before the enter hook runs, so a ``False``
        result does not mean the mode is unchanged.
        """

        async with self._lock:
            if self._state.mode is mode:
                logger.debug("Already in mode: %s", mode.value)
                return True

            previous = self._state.mode
            logger.info("Transitioning: %s -> %s (%s)", previous.value, mode.value, reason)
            self._history.append(
                ModeTransition(
                    from_mode=previous,
                    to_mode=mode,
                    reason=reason,
                    timestamp=self._clock(),
                ),
            )
            payload = dict(data or {})
            try:
                await self._handlers[previous].exit(mode)
                self._state = ModeState(
                    mode=mode,
                    since=self._clock(),
                    previous_mode=previous,
                    data=payload,
                )
                self._persist()
                await self._handlers[mode].enter(previous, copy.deepcopy(payload))
            except Exception:
                logger.exception(
                    "Failed during mode transition %s -> %s",
                    previous.value,
                    mode.value,
                )
                return False
            return True

    async def process_input(self, text: str) -> InputVerdict:
        """Let the current mode interpret operator input."""

        handler = self._handlers[self._state.mode]
        verdict = await handler.process(text)
        if verdict.next_mode is not None:
            await self.transition_to(verdict.next_mode, verdict.reason or "mode input")
        return verdict

    def _restore(self) -> ModeState:
        state = ModeState(mode=Mode.IDLE, since=self._clock())
        try:
            raw = self._store.get_meta(MODE_STATE_META_KEY)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to read persisted mode state: %s", error)
            return state
        if not raw:
            return state
        try:
            restored = ModeState.from_json(raw)
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring unreadable persisted mode state: %s", error)
            return state

        if restored.mode in UNTRUSTED_AFTER_RESTART:
            logger.info("Resetting stuck mode %s to %s", restored.mode.value, Mode.IDLE.value)
            state = ModeState(
                mode=Mode.IDLE,
                since=self._clock(),
                previous_mode=restored.mode,
            )
            self._state = state
            self._persist()
            return state

        logger.info("Restored mode from store: %s", restored.mode.value)
        return restored

    def _persist(self) -> None:
        try:
            self._store.set_meta(MODE_STATE_META_KEY, self._state.to_json())
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to persist mode state: %s", error)


def _validated_handler_table(handlers: Mapping[Mode, ModeHandler]) -> dict[Mode, ModeHandler]:
    missing = [mode.value for mode in Mode if mode not in handlers]
    if missing:
        raise ValueError(f"Missing mode handlers: {', '.join(missing)}")
    for mode, handler in handlers.items():
        if handler.mode is not mode:
            raise ValueError(
                f"Handler registered for {mode.value} declares {handler.mode.value}",
            )
    return dict(handlers)
