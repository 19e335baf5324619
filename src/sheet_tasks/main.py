"""CLI entrypoint for sheet-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from sheet_tasks import __version__
from sheet_tasks.engine.controllers import (
    EngineRunCommand,
    ListTasksCommand,
    ReportCommand,
    SheetTasksCliController,
    StatsCommand,
    TaskIdCommand,
    UploadTaskCommand,
)
from sheet_tasks.engine.errors import SourcePayloadError, TaskNotFoundError, TaskStateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SheetTasksCliController()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TASK_STATUSES = ["queueing", "processing", "completed", "failed", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="sheet-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    envvar="SHEET_TASKS_LOG_LEVEL",
    help="Logging level.",
)
def sheet_tasks(log_level: str) -> None:
    """Sheet task engine CLI."""

    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@sheet_tasks.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("upload")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="CSV or JSON sheet file.",
)
@click.option("--task-type", required=True, help="Task type, e.g. chat-evaluation or url-cleaning.")
@click.option("--sheet-name", default=None, help="Sheet name to read from a multi-sheet JSON file.")
@click.option("--batch-id", default=None, help="Upload batch id (new one when omitted).")
def tasks_upload(
    db_path: Path | None,
    file_path: Path,
    task_type: str,
    sheet_name: str | None,
    batch_id: str | None,
) -> None:
    """Enqueue one task from a sheet file."""

    _emit_from(
        lambda: CONTROLLER.upload(
            UploadTaskCommand(
                db_path=db_path,
                file_path=file_path,
                task_type=task_type,
                sheet_name=sheet_name,
                upload_batch_id=batch_id,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--batch-id", default=None, help="Optional upload batch filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    batch_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_from(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                upload_batch_id=batch_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task state, timestamps and event trail."""

    _emit_from(lambda: CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a queueing task or request cancellation of a processing one."""

    _emit_from(lambda: CONTROLLER.cancel_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task that is not processing, with its row records."""

    _emit_from(lambda: CONTROLLER.delete_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_stats(db_path: Path | None) -> None:
    """Show task counters by state."""

    _emit_from(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path)))


@tasks.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the report to this file instead of stdout.",
)
def tasks_report(db_path: Path | None, task_id: str, output_path: Path | None) -> None:
    """Print or save the report of a completed task."""

    _emit_from(
        lambda: CONTROLLER.report(
            ReportCommand(db_path=db_path, task_id=task_id, output_path=output_path),
        ),
    )


@sheet_tasks.group()
def engine() -> None:
    """Task engine commands."""


@engine.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one task, or loop until idle.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads (defaults to SHEET_TASKS_WORKER_COUNT).",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks per worker in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls (0 = never).",
)
def engine_run(
    db_path: Path | None,
    once: bool,
    workers: int | None,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the task engine."""

    _emit_from(
        lambda: CONTROLLER.run_engine(
            EngineRunCommand(
                db_path=db_path,
                once=once,
                workers=workers,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _emit_from(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TaskNotFoundError, TaskStateError, SourcePayloadError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sheet_tasks()
