"""Engine worker loop and thread pool."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import timedelta

from sheet_tasks.engine.aggregator import ReportRenderer, ResultAggregator, count_rows
from sheet_tasks.engine.errors import SourcePayloadError, TaskFatalError, UnknownTaskTypeError
from sheet_tasks.engine.models import (
    FailureClass,
    RowInput,
    TaskStatus,
    TaskView,
    TerminalEvent,
)
from sheet_tasks.engine.pipelines import RowPipeline
from sheet_tasks.engine.progress import ProgressTracker
from sheet_tasks.engine.registry import TaskHandlerRegistry
from sheet_tasks.engine.repository import RowStore, TaskRepository
from sheet_tasks.engine.sheets import DefaultSheetParser, SheetParser

logger = logging.getLogger(__name__)

TerminalCallback = Callable[[TerminalEvent], None]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    rows_processed: int = 0
    idle_polls: int = 0
    recovered: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.rows_processed += other.rows_processed
        self.idle_polls += other.idle_polls
        self.recovered += other.recovered


class EngineWorker:
    """Claims queueing tasks and runs their rows through the registered pipeline.

    Rows run sequentially in row order. Cancellation is checked before every row
    and before finalization; an in-flight service call is never interrupted.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: TaskHandlerRegistry,
        worker_id: str,
        row_store: RowStore | None = None,
        parser: SheetParser | None = None,
        renderer: ReportRenderer | None = None,
        poll_interval_seconds: float = 2.0,
        progress_every_rows: int = 10,
        progress_interval_seconds: float = 5.0,
        task_type_filter: str | None = None,
        stale_processing_seconds: float = 1800.0,
        on_terminal: TerminalCallback | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.row_store = row_store or RowStore(repository.engine)
        self.parser = parser or DefaultSheetParser()
        self.aggregator = ResultAggregator(
            repository=repository,
            row_store=self.row_store,
            renderer=renderer,
        )
        self.progress = ProgressTracker(
            repository,
            every_rows=progress_every_rows,
            interval_seconds=progress_interval_seconds,
        )
        self.poll_interval_seconds = poll_interval_seconds
        self.task_type_filter = task_type_filter
        self.stale_processing_seconds = stale_processing_seconds
        self.on_terminal = on_terminal
        self._stop_requested = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        """Stop after the current task; the queue is not drained."""

        self._stop_requested.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_tasks()
        task = self.repository.claim_next_queueing(
            worker_id=self.worker_id,
            task_type=self.task_type_filter,
        )
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info("Worker %s claimed task %s (%s)", self.worker_id, task.task_id, task.task_type)
        try:
            status = self._process_task(task, summary)
        except Exception as error:
            logger.exception("Unexpected error while processing task %s", task.task_id)
            status = self._fail(
                task,
                error_message=f"Internal error: {error.__class__.__name__}: {error}",
                failure_class=FailureClass.INTERNAL_ERROR,
            )
        finally:
            self.progress.forget(task.task_id)

        if status == TaskStatus.COMPLETED:
            summary.completed = 1
        elif status == TaskStatus.FAILED:
            summary.failed = 1
        elif status == TaskStatus.CANCELLED:
            summary.cancelled = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (0 = poll forever).
            handle_signals: Install SIGINT/SIGTERM handlers requesting a stop.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        signals = self._signal_handlers() if handle_signals else nullcontext()
        with signals:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls > 0 and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _process_task(self, task: TaskView, summary: WorkerRunSummary) -> TaskStatus | None:
        try:
            pipeline = self.registry.resolve(task.task_type)
        except UnknownTaskTypeError as error:
            return self._fail(
                task,
                error_message=str(error),
                failure_class=FailureClass.UNKNOWN_TASK_TYPE,
            )

        try:
            rows = self._load_rows(task)
        except SourcePayloadError as error:
            return self._fail(
                task,
                error_message=f"Source payload unreadable: {error}",
                failure_class=FailureClass.SOURCE_PAYLOAD_UNREADABLE,
            )

        return self._run_rows(task, pipeline, rows, summary)

    def _run_rows(
        self,
        task: TaskView,
        pipeline: RowPipeline,
        rows: list[RowInput],
        summary: WorkerRunSummary,
    ) -> TaskStatus | None:
        total = len(rows)
        self.progress.start(task.task_id)
        finished = self.row_store.completed_row_numbers(task.task_id)
        done = sum(1 for row in rows if row.row_number in finished)
        if finished:
            logger.info("Task %s resumes with %d/%d rows already done", task.task_id, done, total)

        for row in rows:
            if self.repository.is_cancel_requested(task_id=task.task_id):
                return self._cancel(task)
            if row.row_number in finished:
                continue
            try:
                outcome = pipeline.process(row)
            except TaskFatalError as error:
                if error.output is not None:
                    self.row_store.append_result(error.output)
                    summary.rows_processed += 1
                return self._fail(
                    task,
                    error_message=error.reason,
                    failure_class=error.failure_class,
                    details=error.details,
                )
            if not outcome.ok:
                logger.info(
                    "Task %s row %d failed locally: %s",
                    task.task_id,
                    row.row_number,
                    outcome.reason,
                )
            self.row_store.append_result(outcome.output)
            summary.rows_processed += 1
            done += 1
            self.progress.report(task.task_id, done, total)

        if self.repository.is_cancel_requested(task_id=task.task_id):
            return self._cancel(task)

        result = self.aggregator.finalize(task)
        if not result.committed:
            return None
        self._emit(result.event)
        return result.status

    def _recover_stale_tasks(self) -> int:
        if self.stale_processing_seconds <= 0:
            return 0
        stale_after = timedelta(seconds=self.stale_processing_seconds)
        recovered = 0
        for task in self.repository.list_stale_processing(stale_after=stale_after):
            logger.warning(
                "Task %s (worker %s) has not been updated since %s, failing it",
                task.task_id,
                task.worker_id,
                task.updated_at.isoformat(),
            )
            status = self._fail(
                task,
                error_message=(
                    f"Worker {task.worker_id or '-'} stopped updating the task "
                    f"for over {int(self.stale_processing_seconds)}s"
                ),
                failure_class=FailureClass.INTERNAL_ERROR,
                details={"stale_updated_at": task.updated_at.isoformat()},
            )
            if status == TaskStatus.FAILED:
                recovered += 1
        return recovered

    def _load_rows(self, task: TaskView) -> list[RowInput]:
        rows = self.row_store.load_rows(task.task_id)
        if rows:
            return rows
        payload = self.repository.read_source_payload(task_id=task.task_id)
        if payload is None:
            raise SourcePayloadError("Task has no source payload")
        records = self.parser.parse(
            payload,
            task_type=task.task_type,
            file_mime_type=task.file_mime_type,
            sheet_name=task.sheet_name,
        )
        stored = self.row_store.store_inputs(task_id=task.task_id, records=records)
        logger.info("Task %s: stored %d row inputs", task.task_id, stored)
        return self.row_store.load_rows(task.task_id)

    def _fail(
        self,
        task: TaskView,
        *,
        error_message: str,
        failure_class: FailureClass,
        details: dict[str, object] | None = None,
    ) -> TaskStatus | None:
        self.progress.flush(task.task_id)
        event = TerminalEvent(
            task_id=task.task_id,
            final_status=TaskStatus.FAILED,
            row_counts=count_rows(self.row_store.list_results(task.task_id)),
            error_message=error_message,
        )
        committed = self.repository.commit_terminal(
            task_id=task.task_id,
            status=TaskStatus.FAILED,
            error_message=error_message,
            failure_class=failure_class,
            terminal_event=event,
            event_details=details,
        )
        if not committed:
            return None
        logger.warning(
            "Task %s failed (%s): %s",
            task.task_id,
            failure_class.value,
            error_message,
        )
        self._emit(event)
        return TaskStatus.FAILED

    def _cancel(self, task: TaskView) -> TaskStatus | None:
        self.progress.flush(task.task_id)
        event = TerminalEvent(
            task_id=task.task_id,
            final_status=TaskStatus.CANCELLED,
            row_counts=count_rows(self.row_store.list_results(task.task_id)),
        )
        committed = self.repository.commit_terminal(
            task_id=task.task_id,
            status=TaskStatus.CANCELLED,
            terminal_event=event,
        )
        if not committed:
            return None
        logger.info("Task %s cancelled", task.task_id)
        self._emit(event)
        return TaskStatus.CANCELLED

    def _emit(self, event: TerminalEvent) -> None:
        if self.on_terminal is None:
            return
        try:
            self.on_terminal(event)
        except Exception:  # noqa: BLE001
            logger.exception("Terminal event callback failed for task %s", event.task_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_requested.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        with _stop_on_signals(self.request_stop):
            yield


class WorkerPool:
    """Runs N engine workers on threads, each with its own repository.

    Claim exclusivity comes from the conditional claim update, so workers share
    nothing but the database.
    """

    def __init__(self, *, worker_count: int, worker_factory: Callable[[int], EngineWorker]) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be a positive integer")
        self.worker_count = worker_count
        self._worker_factory = worker_factory
        self.workers: list[EngineWorker] = []

    def request_stop(self) -> None:
        for worker in self.workers:
            worker.request_stop()

    def run(self, *, max_tasks: int | None = None, max_idle_polls: int = 1) -> WorkerRunSummary:
        """Run every worker loop to exit; `max_tasks` applies per worker."""

        self.workers = [self._worker_factory(index) for index in range(self.worker_count)]
        summaries = [WorkerRunSummary() for _ in self.workers]
        errors: list[Exception] = []

        def _run(index: int) -> None:
            try:
                summaries[index] = self.workers[index].run_loop(
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    handle_signals=False,
                )
            except Exception as error:
                logger.exception("Worker %s crashed", self.workers[index].worker_id)
                errors.append(error)

        threads = [
            threading.Thread(
                target=_run,
                args=(index,),
                name=f"sheet-tasks-{worker.worker_id}",
                daemon=True,
            )
            for index, worker in enumerate(self.workers)
        ]
        with _stop_on_signals(self.request_stop):
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads):
                for thread in threads:
                    thread.join(timeout=0.2)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.add(summary)
        if errors:
            raise RuntimeError(f"{len(errors)} worker(s) crashed") from errors[0]
        return aggregate


@contextmanager
def _stop_on_signals(request_stop: Callable[[], None]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, stopping after the current task", name)
        request_stop()

    try:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
