"""CLI entrypoint for harness-pilot."""

import logging
import sys
from pathlib import Path

import rich_click as click

from harness_pilot import __version__
from harness_pilot.orchestrator.controllers import (
    HarnessesCommand,
    InspectTaskCommand,
    ListTasksCommand,
    ModeCommand,
    OrchestratorCliController,
    SendCommand,
    ServeCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="harness-pilot")
def harness_pilot() -> None:
    """Route coding requests to CLI harnesses with priority fallback."""


@harness_pilot.command("send")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory harnesses run in; defaults to HARNESS_PILOT_WORKSPACE.",
)
@click.argument("message")
def send(db_path: Path | None, workspace: Path | None, message: str) -> None:
    """Handle one operator message and print the replies."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.send(
            SendCommand(db_path=db_path, message=message, workspace=workspace),
        ),
    )


@harness_pilot.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory harnesses run in; defaults to HARNESS_PILOT_WORKSPACE.",
)
@click.option(
    "--polling-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Markdown file with polling jobs; defaults to HARNESS_PILOT_POLLING_FILE.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for the session.",
)
def serve(
    db_path: Path | None,
    workspace: Path | None,
    polling_file: Path | None,
    log_level: str,
) -> None:
    """Read operator messages from stdin until EOF or `/quit`.

    Scheduled reminders and polling jobs run while the session is open.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _emit_lines(
        ORCHESTRATOR_CONTROLLER.serve(
            ServeCommand(
                db_path=db_path,
                input_stream=sys.stdin,
                emit=click.echo,
                workspace=workspace,
                polling_file=polling_file,
            ),
        ),
    )


@harness_pilot.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "in_progress", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@harness_pilot.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id),
        ),
    )


@harness_pilot.command("mode")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--set",
    "set_mode",
    type=click.Choice(["idle", "resting"], case_sensitive=False),
    default=None,
    help="Switch the persisted mode before printing it.",
)
def mode(db_path: Path | None, set_mode: str | None) -> None:
    """Show the persisted orchestrator mode."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.mode(ModeCommand(db_path=db_path, set_mode=set_mode)))


@harness_pilot.command("harnesses")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def harnesses(db_path: Path | None) -> None:
    """List configured harnesses in fallback order with availability."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.harnesses(HarnessesCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    harness_pilot()
