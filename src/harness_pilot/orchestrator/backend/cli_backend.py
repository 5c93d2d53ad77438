"""Subprocess-based executor and availability oracle for CLI harnesses."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path

from harness_pilot.orchestrator.backend.base import (
    HarnessRunRequest,
    HarnessRunResult,
    HarnessUnreachableError,
)
from harness_pilot.orchestrator.backend.output_parser import find_modified_files, find_question
from harness_pilot.orchestrator.models import HarnessAvailability, HarnessOutcome
from harness_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class CommandTemplateError(ValueError):
    """Command template cannot be rendered into an argv."""


class CliHarnessExecutor:
    """Execute per-harness CLI command templates in the operator workspace.

    The timeout lives here; callers await the result for as long as the
    harness runs.
    """

    def __init__(
        self,
        command_templates: Mapping[str, str],
        *,
        timeout_seconds: float = 300.0,
        terminate_grace_seconds: float = 2.0,
    ) -> None:
        self.command_templates = dict(command_templates)
        self.timeout_seconds = timeout_seconds
        self.terminate_grace_seconds = terminate_grace_seconds

    async def run(self, request: HarnessRunRequest) -> HarnessRunResult:
        template = self.command_templates.get(request.harness_id, "")
        try:
            argv = build_run_args(
                command_template=template,
                prompt=request.instruction,
                workspace=request.workspace,
            )
        except CommandTemplateError as error:
            raise HarnessUnreachableError(request.harness_id, str(error)) from error

        env = os.environ.copy()
        env["CI"] = "true"
        env["TERM"] = "dumb"
        env["HARNESS_PILOT_HARNESS"] = request.harness_id
        if request.task_id:
            env["HARNESS_PILOT_TASK_ID"] = request.task_id

        started_at = utc_now()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.workspace),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise HarnessUnreachableError(
                request.harness_id,
                f"Harness command not found: {argv[0]}",
            ) from error
        except OSError as error:
            raise HarnessUnreachableError(
                request.harness_id,
                f"Harness failed to start: {error}",
            ) from error

        logger.info("Harness %s started (pid=%s)", request.harness_id, process.pid)
        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            await self._terminate(process)
            logger.warning(
                "Harness %s timed out after %.1fs",
                request.harness_id,
                self.timeout_seconds,
            )
            return HarnessRunResult(
                status=HarnessOutcome.FAILED,
                output=f"Execution timed out after {self.timeout_seconds:g} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                files_modified=(),
                started_at=started_at,
                completed_at=utc_now(),
                timed_out=True,
            )

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        exit_code = process.returncode
        completed_at = utc_now()

        if exit_code != 0:
            return HarnessRunResult(
                status=HarnessOutcome.FAILED,
                output=_join_streams(stdout, stderr),
                exit_code=exit_code,
                files_modified=find_modified_files(stdout),
                started_at=started_at,
                completed_at=completed_at,
            )

        output = stdout if stdout.strip() else stderr
        question = find_question(output)
        return HarnessRunResult(
            status=(
                HarnessOutcome.NEEDS_CLARIFICATION if question else HarnessOutcome.COMPLETED
            ),
            output=output.strip() or "Command completed with no output",
            exit_code=exit_code,
            files_modified=find_modified_files(output),
            started_at=started_at,
            completed_at=completed_at,
            question=question,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


class CommandAvailability:
    """Availability oracle: a harness is available when its command is on PATH."""

    def __init__(self, command_templates: Mapping[str, str]) -> None:
        self.command_templates = dict(command_templates)

    def check(self, harness_id: str) -> HarnessAvailability:
        template = self.command_templates.get(harness_id, "").strip()
        if not template:
            return HarnessAvailability(False, f"No command template configured for {harness_id}")
        try:
            head = shlex.split(template)[0]
        except (ValueError, IndexError):
            return HarnessAvailability(False, f"Unparseable command template for {harness_id}")
        if shutil.which(head) is None:
            return HarnessAvailability(False, f"Command not found on PATH: {head}")
        return HarnessAvailability(True)

    def __call__(self, harness_id: str) -> HarnessAvailability:
        return self.check(harness_id)


def build_run_args(*, command_template: str, prompt: str, workspace: Path) -> list[str]:
    """Render a template with ``{prompt}`` and ``{workspace}`` into an argv."""

    stripped = command_template.strip()
    if not stripped:
        raise CommandTemplateError("Harness command template is empty.")
    if "{prompt}" not in stripped:
        raise CommandTemplateError("Harness command template must include {prompt}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            workspace=shlex.quote(str(workspace)),
        )
    except (KeyError, IndexError) as error:
        raise CommandTemplateError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandTemplateError("Harness command template rendered empty command.")
    return argv


def _join_streams(stdout: str, stderr: str) -> str:
    parts = [part.strip() for part in (stdout, stderr) if part.strip()]
    return "\n".join(parts) or "Harness exited with no output"
