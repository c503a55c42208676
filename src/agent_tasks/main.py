"""CLI entrypoint for agent-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_tasks import __version__
from agent_tasks.engine.controllers import (
    ListQuestionsCommand,
    ListTasksCommand,
    SubmitTaskCommand,
    TaskCliController,
    TaskIdCommand,
    WorkerCommand,
)
from agent_tasks.engine.errors import AgentTaskError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="agent-tasks")
@click.option(
    "--log-level",
    envvar="AGENT_TASKS_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def agent_tasks(log_level: str) -> None:
    """Agent task execution engine CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@agent_tasks.group()
def tasks() -> None:
    """Submit, list, inspect and cancel agent tasks."""


@tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--description", required=True, help="Natural-language task for the agent.")
@click.option(
    "--history-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON list of prior `{role, content}` turns replayed before the description.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-attempt deadline; defaults to AGENT_TASKS_TASK_TIMEOUT_SECONDS.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries after transient failures; defaults to AGENT_TASKS_MAX_RETRY_ATTEMPTS.",
)
def tasks_submit(
    db_path: Path | None,
    description: str,
    history_file: Path | None,
    timeout_seconds: float | None,
    max_retries: int | None,
) -> None:
    """Submit a task; a worker picks it up asynchronously."""

    _emit_lines(
        lambda: CONTROLLER.submit(
            SubmitTaskCommand(
                db_path=db_path,
                description=description,
                history_path=history_file,
                timeout_seconds=timeout_seconds,
                max_retries=max_retries,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks of the current user, newest first."""

    _emit_lines(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its tool-call log and event history."""

    _emit_lines(lambda: CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a waiting task, or ask the worker to stop a running one."""

    _emit_lines(lambda: CONTROLLER.cancel_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@agent_tasks.group()
def worker() -> None:
    """Task worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads; defaults to AGENT_TASKS_WORKER_COUNT. More than one runs until stopped.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in single-worker loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a single worker exits.",
)
@click.option(
    "--duration-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop a multi-worker pool after this many seconds instead of waiting for Ctrl+C.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    workers: int | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    duration_seconds: float | None,
) -> None:
    """Claim and execute queued tasks."""

    _emit_lines(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                workers=workers,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                duration_seconds=duration_seconds,
            ),
        ),
    )


@agent_tasks.group()
def tools() -> None:
    """Tool catalogue commands."""


@tools.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tools_list(db_path: Path | None) -> None:
    """List tools available to the agent."""

    _emit_lines(lambda: CONTROLLER.list_tools(db_path))


@agent_tasks.group()
def questions() -> None:
    """Local question bank commands."""


@questions.command("seed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def questions_seed(db_path: Path | None) -> None:
    """Load demo categories, qualifications and questions for the current user."""

    _emit_lines(lambda: CONTROLLER.seed_questions(db_path))


@questions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--search", default=None, help="Optional case-insensitive text filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max questions to print.",
)
def questions_list(db_path: Path | None, search: str | None, limit: int) -> None:
    """List active questions of the current user."""

    _emit_lines(
        lambda: CONTROLLER.list_questions(
            ListQuestionsCommand(db_path=db_path, search=search, limit=limit),
        ),
    )


def _emit_lines(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (AgentTaskError, ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_tasks()
