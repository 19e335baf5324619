"""Controllers for sheet-tasks CLI commands."""

from __future__ import annotations

import mimetypes
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from sheet_tasks.clients import build_service_clients
from sheet_tasks.config import Settings
from sheet_tasks.engine.models import TaskCreate, TaskStatus, TaskView
from sheet_tasks.engine.registry import TaskHandlerRegistry, build_default_registry
from sheet_tasks.engine.repository import TaskRepository
from sheet_tasks.engine.retry import RetryController, RetryPolicy
from sheet_tasks.engine.sheets import DefaultSheetParser
from sheet_tasks.engine.worker import EngineWorker, WorkerPool, WorkerRunSummary


@dataclass(slots=True)
class UploadTaskCommand:
    """CLI input for enqueuing a task from a local sheet file."""

    db_path: Path | None
    file_path: Path
    task_type: str
    sheet_name: str | None = None
    upload_batch_id: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    upload_batch_id: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations (inspect, cancel, delete)."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class ReportCommand:
    """CLI input for fetching a completed task's report."""

    db_path: Path | None
    task_id: str
    output_path: Path | None = None


@dataclass(slots=True)
class EngineRunCommand:
    """CLI input for engine execution."""

    db_path: Path | None
    once: bool
    workers: int | None = None
    max_tasks: int | None = None
    max_idle_polls: int = 1


class SheetTasksCliController:
    """Coordinates queue, engine, and inspection CLI operations."""

    def upload(self, command: UploadTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = command.file_path.read_bytes()
        mime_type = mimetypes.guess_type(command.file_path.name)[0]
        records = DefaultSheetParser().parse(
            payload,
            task_type=command.task_type,
            file_mime_type=mime_type,
            sheet_name=command.sheet_name,
        )
        with _repository(settings) as repository:
            task = repository.enqueue_task(
                TaskCreate(
                    task_type=command.task_type,
                    task_file_blob=payload,
                    upload_batch_id=command.upload_batch_id,
                    original_filename=command.file_path.name,
                    sheet_name=command.sheet_name,
                    file_mime_type=mime_type,
                    metadata={"row_count": len(records)},
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type} status={task.status.value}",
            f"Upload batch: {task.upload_batch_id}",
            f"Rows: {len(records)}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                upload_batch_id=command.upload_batch_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"progress={task.progress_percentage}% batch={task.upload_batch_id} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Progress: {task.progress_percentage}%",
            f"File: {task.original_filename or '-'} ({_size(task.task_file_size)})",
            f"Result: {task.results_mime_type or '-'} ({_size(task.results_file_size)})",
            f"Worker: {task.worker_id or '-'}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_message or '-'}",
            *_timestamp_lines(task),
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.cancel_task(task_id=command.task_id)
        if task.status == TaskStatus.CANCELLED:
            return [f"Task cancelled: {command.task_id}"]
        return [f"Cancellation requested: {command.task_id} (stops at the next row boundary)"]

    def delete_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.delete_task(task_id=command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.task_stats()
        return [
            f"Total tasks: {stats.total_tasks}",
            f"  queueing: {stats.queueing_tasks}",
            f"  processing: {stats.processing_tasks}",
            f"  completed: {stats.completed_tasks}",
            f"  failed: {stats.failed_tasks}",
            f"  cancelled: {stats.cancelled_tasks}",
            f"Upload batches: {stats.total_upload_batches}",
        ]

    def report(self, command: ReportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.read_result_payload(task_id=command.task_id)
        if result is None:
            return [f"No report available for task: {command.task_id}"]

        blob, mime_type = result
        if command.output_path is not None:
            command.output_path.write_bytes(blob)
            return [f"Report written: {command.output_path} ({mime_type or 'unknown'})"]
        return blob.decode("utf-8", errors="replace").splitlines()

    def run_engine(self, command: EngineRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.workers is not None:
            settings.engine.worker_count = command.workers
        settings.validate_for_engine()

        retry = RetryController(policy=RetryPolicy.from_settings(settings.retry))
        with ExitStack() as stack:
            clients = stack.enter_context(build_service_clients(settings.services))
            registry = build_default_registry(
                qa_client=clients.qa,
                search_client=clients.search,
                similarity_client=clients.similarity,
                retry=retry,
            )
            bootstrap = stack.enter_context(_repository(settings, all_users=True))

            if command.once or settings.engine.worker_count == 1:
                worker = _build_worker(
                    settings=settings,
                    repository=bootstrap,
                    registry=registry,
                    worker_id=settings.engine.worker_id,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
            else:
                summary = _run_pool(
                    settings=settings,
                    registry=registry,
                    stack=stack,
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )

        return [_summary_line(summary)]


def _run_pool(
    *,
    settings: Settings,
    registry: TaskHandlerRegistry,
    stack: ExitStack,
    max_tasks: int | None,
    max_idle_polls: int,
) -> WorkerRunSummary:
    def _factory(index: int) -> EngineWorker:
        repository = TaskRepository(settings.db_path, user_id=None)
        stack.callback(repository.close)
        return _build_worker(
            settings=settings,
            repository=repository,
            registry=registry,
            worker_id=f"{settings.engine.worker_id}-{index + 1}",
        )

    pool = WorkerPool(worker_count=settings.engine.worker_count, worker_factory=_factory)
    return pool.run(max_tasks=max_tasks, max_idle_polls=max_idle_polls)


def _build_worker(
    *,
    settings: Settings,
    repository: TaskRepository,
    registry: TaskHandlerRegistry,
    worker_id: str,
) -> EngineWorker:
    return EngineWorker(
        repository=repository,
        registry=registry,
        worker_id=worker_id,
        poll_interval_seconds=settings.engine.poll_interval_seconds,
        progress_every_rows=settings.engine.progress_every_rows,
        progress_interval_seconds=settings.engine.progress_interval_seconds,
        task_type_filter=settings.engine.task_type_filter,
        stale_processing_seconds=settings.engine.stale_processing_seconds,
    )


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Engine summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"failed={summary.failed} cancelled={summary.cancelled} "
        f"rows={summary.rows_processed} idle_polls={summary.idle_polls} "
        f"recovered={summary.recovered}"
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _size(value: int | None) -> str:
    return f"{value} bytes" if value is not None else "-"


def _timestamp_lines(task: TaskView) -> list[str]:
    return [
        f"{label}: {value.isoformat() if value is not None else '-'}"
        for label, value in (
            ("Created", task.created_at),
            ("Started", task.started_at),
            ("Completed", task.completed_at),
            ("Cancel requested", task.cancel_requested_at),
            ("Cancelled", task.cancelled_at),
        )
    ]


@contextmanager
def _repository(
    settings: Settings,
    *,
    all_users: bool = False,
) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        user_id=None if all_users else settings.user_id,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
