"""Runtime configuration for the orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from harness_pilot.orchestrator.intent import DEFAULT_GUARD_TERMS
from harness_pilot.orchestrator.models import HarnessDescriptor
from harness_pilot.orchestrator.routing import (
    DEFAULT_AVOID_TERMS,
    DEFAULT_HARNESS_PRIORITIES,
    DEFAULT_TRIGGER_TERMS,
    ordered_by_priority,
    parse_harness_priorities,
)

DEFAULT_COMMAND_TEMPLATES = {
    "claude": "claude -p {prompt}",
    "gemini": "gemini -p {prompt}",
    "copilot": "copilot -p {prompt}",
}


@dataclass(slots=True)
class HarnessSettings:
    """Routing and invocation settings for one harness."""

    harness_id: str
    fallback_priority: int
    command: str
    trigger_terms: tuple[str, ...] = ()
    avoid_terms: tuple[str, ...] = ()

    def descriptor(self) -> HarnessDescriptor:
        return HarnessDescriptor(
            harness_id=self.harness_id,
            fallback_priority=self.fallback_priority,
            trigger_terms=self.trigger_terms,
            avoid_terms=self.avoid_terms,
        )


@dataclass(slots=True)
class ClassifierSettings:
    """Hosted intent classifier; disabled when no API key is set."""

    api_key: str = ""
    model: str = "openai/gpt-4o-mini"
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_seconds: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".harness_pilot.db")
    workspace: Path = field(default_factory=Path.cwd)
    harnesses: tuple[HarnessSettings, ...] = ()
    execution_timeout_seconds: float = 300.0
    guard_terms: tuple[str, ...] = DEFAULT_GUARD_TERMS
    polling_file: Path = Path("POLLING.md")
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        priorities = parse_harness_priorities(
            os.getenv("HARNESS_PILOT_HARNESSES", _default_priorities_csv()),
        )
        harnesses = tuple(
            HarnessSettings(
                harness_id=harness_id,
                fallback_priority=priority,
                command=os.getenv(
                    _harness_env(harness_id, "COMMAND"),
                    DEFAULT_COMMAND_TEMPLATES.get(harness_id, ""),
                ),
                trigger_terms=_env_terms(
                    _harness_env(harness_id, "TRIGGERS"),
                    DEFAULT_TRIGGER_TERMS.get(harness_id, ()),
                ),
                avoid_terms=_env_terms(
                    _harness_env(harness_id, "AVOID"),
                    DEFAULT_AVOID_TERMS.get(harness_id, ()),
                ),
            )
            for harness_id, priority in priorities.items()
        )
        return cls(
            db_path=db_path or Path(os.getenv("HARNESS_PILOT_DB_PATH", ".harness_pilot.db")),
            workspace=Path(os.getenv("HARNESS_PILOT_WORKSPACE", "") or Path.cwd()),
            harnesses=harnesses,
            execution_timeout_seconds=_env_float("HARNESS_PILOT_EXECUTION_TIMEOUT_SECONDS", 300.0),
            guard_terms=_env_terms("HARNESS_PILOT_GUARD_TERMS", DEFAULT_GUARD_TERMS),
            polling_file=Path(os.getenv("HARNESS_PILOT_POLLING_FILE", "POLLING.md")),
            classifier=ClassifierSettings(
                api_key=os.getenv("HARNESS_PILOT_CLASSIFIER_API_KEY", ""),
                model=os.getenv("HARNESS_PILOT_CLASSIFIER_MODEL", "openai/gpt-4o-mini"),
                base_url=os.getenv(
                    "HARNESS_PILOT_CLASSIFIER_BASE_URL",
                    "https://openrouter.ai/api/v1",
                ),
                timeout_seconds=_env_float("HARNESS_PILOT_CLASSIFIER_TIMEOUT_SECONDS", 30.0),
            ),
        )

    def descriptors(self) -> tuple[HarnessDescriptor, ...]:
        return tuple(ordered_by_priority(item.descriptor() for item in self.harnesses))

    def command_templates(self) -> dict[str, str]:
        return {item.harness_id: item.command for item in self.harnesses}

    def validate(self) -> None:
        """Raise configuration error if settings cannot drive dispatch."""

        if not self.harnesses:
            raise ValueError("HARNESS_PILOT_HARNESSES must list at least one harness.")
        seen_priorities: dict[int, str] = {}
        for harness in self.harnesses:
            if harness.fallback_priority in seen_priorities:
                other = seen_priorities[harness.fallback_priority]
                raise ValueError(
                    "HARNESS_PILOT_HARNESSES has duplicate priority "
                    f"{harness.fallback_priority} for {other!r} "
                    f"and {harness.harness_id!r}.",
                )
            seen_priorities[harness.fallback_priority] = harness.harness_id
            if "{prompt}" not in harness.command:
                raise ValueError(
                    f"{_harness_env(harness.harness_id, 'COMMAND')} must include {{prompt}}.",
                )
        if self.execution_timeout_seconds <= 0:
            raise ValueError("HARNESS_PILOT_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if self.classifier.timeout_seconds <= 0:
            raise ValueError("HARNESS_PILOT_CLASSIFIER_TIMEOUT_SECONDS must be > 0.")
        if self.classifier.enabled:
            parsed = urlparse(self.classifier.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid HARNESS_PILOT_CLASSIFIER_BASE_URL: "
                    f"{self.classifier.base_url!r}. Expected an absolute http(s) URL.",
                )


def _default_priorities_csv() -> str:
    return ",".join(f"{name}:{priority}" for name, priority in DEFAULT_HARNESS_PRIORITIES.items())


def _harness_env(harness_id: str, suffix: str) -> str:
    return f"HARNESS_PILOT_{harness_id.upper()}_{suffix}"


def _env_terms(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error
