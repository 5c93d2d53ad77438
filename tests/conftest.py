"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from harness_pilot.orchestrator.repository import OrchestratorRepository

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
_ECHO_AGENT = f"{shlex.quote(sys.executable)} -m harness_pilot.orchestrator.backend.echo_agent"


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def echo_command(monkeypatch) -> Callable[..., str]:
    """Build a harness command template that runs the echo agent.

    The agent runs in a child process, so the source tree is exported on
    PYTHONPATH for checkouts that are not installed.
    """

    existing = os.environ.get("PYTHONPATH", "")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(part for part in (str(_SRC_DIR), existing) if part),
    )

    def _template(*flags: str) -> str:
        return " ".join([_ECHO_AGENT, *(shlex.quote(flag) for flag in flags), "{prompt}"])

    return _template
