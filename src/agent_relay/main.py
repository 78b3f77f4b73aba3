"""CLI entrypoint for agent-relay."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_relay import __version__
from agent_relay.controllers import (
    ExecCommand,
    HistoryCommand,
    ImportCommand,
    PipelineRunCommand,
    RelayCliController,
    ResumeCommand,
    RunReport,
)
from agent_relay.errors import RelayError
from agent_relay.events import RelayEvent

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()
T = TypeVar("T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to AGENT_RELAY_DB_PATH or .agent_relay.db).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_relay(log_level: str) -> None:
    """Run reasoning-engine agents and multi-step pipelines."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.command("exec")
@click.option(
    "--agent-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON agent definition.",
)
@click.option("--instructions", default=None, help="Additional instructions appended to the task.")
@_DB_PATH_OPTION
@click.argument("task")
def exec_task(agent_file: Path, instructions: str | None, db_path: Path | None, task: str) -> None:
    """Run one task with an agent and stream its output."""

    _finish(
        _guard(
            lambda: CONTROLLER.execute(
                ExecCommand(
                    agent_file=agent_file,
                    task=task,
                    instructions=instructions,
                    db_path=db_path,
                ),
                emit=click.echo,
            ),
        ),
    )


@agent_relay.command("resume")
@click.option(
    "--agent-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON agent definition.",
)
@click.option("--session-id", required=True, help="Engine session id to continue.")
@_DB_PATH_OPTION
@click.argument("message")
def resume_session(agent_file: Path, session_id: str, db_path: Path | None, message: str) -> None:
    """Continue a previous engine session with a follow-up message."""

    _finish(
        _guard(
            lambda: CONTROLLER.resume(
                ResumeCommand(
                    agent_file=agent_file,
                    session_id=session_id,
                    message=message,
                    db_path=db_path,
                ),
                emit=click.echo,
            ),
        ),
    )


@agent_relay.group()
def pipeline() -> None:
    """Pipeline commands."""


@pipeline.command("run")
@click.option(
    "--pipeline-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with the pipeline and the agents it references.",
)
@click.option("--input", "initial_input", default=None, help="Initial input for step 0.")
@click.option(
    "--auto-approve/--no-auto-approve",
    default=False,
    show_default=True,
    help="Approve every gate without prompting.",
)
@_DB_PATH_OPTION
def pipeline_run(
    pipeline_file: Path,
    initial_input: str | None,
    auto_approve: bool,
    db_path: Path | None,
) -> None:
    """Run a pipeline, prompting at approval gates."""

    _finish(
        _guard(
            lambda: CONTROLLER.run_pipeline(
                PipelineRunCommand(
                    pipeline_file=pipeline_file,
                    initial_input=initial_input,
                    auto_approve=auto_approve,
                    db_path=db_path,
                ),
                emit=click.echo,
                decide=_confirm_gate,
            ),
        ),
    )


@agent_relay.group()
def agents() -> None:
    """Stored agent definitions."""


@agents.command("import")
@click.option("--file", "file_path", type=click.Path(path_type=Path, exists=True), required=True)
@_DB_PATH_OPTION
def agents_import(file_path: Path, db_path: Path | None) -> None:
    """Import agents (one object, a list, or {"agents": [...]})."""

    _emit_lines(_guard(lambda: CONTROLLER.import_agents(ImportCommand(file_path, db_path))))


@agents.command("list")
@_DB_PATH_OPTION
def agents_list(db_path: Path | None) -> None:
    """List stored agents."""

    _emit_lines(CONTROLLER.list_agents(db_path))


@agent_relay.group()
def pipelines() -> None:
    """Stored pipeline definitions."""


@pipelines.command("import")
@click.option("--file", "file_path", type=click.Path(path_type=Path, exists=True), required=True)
@_DB_PATH_OPTION
def pipelines_import(file_path: Path, db_path: Path | None) -> None:
    """Import pipelines together with any agents listed in the same file."""

    _emit_lines(_guard(lambda: CONTROLLER.import_pipelines(ImportCommand(file_path, db_path))))


@pipelines.command("list")
@_DB_PATH_OPTION
def pipelines_list(db_path: Path | None) -> None:
    """List stored pipelines and their steps."""

    _emit_lines(CONTROLLER.list_pipelines(db_path))


@agent_relay.command("history")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many latest executions to print.",
)
def history(db_path: Path | None, limit: int) -> None:
    """Show recent executions, newest first."""

    _emit_lines(CONTROLLER.history(HistoryCommand(db_path=db_path, limit=limit)))


def _confirm_gate(event: RelayEvent) -> bool:
    preview = event.data.get("previous_output_preview") or ""
    if preview:
        click.echo(preview)
    return click.confirm(
        f"Run step {event.data.get('step_index')} ({event.data.get('agent_name')})?",
        default=True,
    )


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (ValueError, RelayError) as error:
        raise click.ClickException(str(error)) from error


def _finish(report: RunReport) -> None:
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Run did not complete successfully.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
