"""Persistent task queue and row store backed by SQLModel + SQLite.

Every mutation of a task record is a conditional update keyed on the expected
prior state; a zero rowcount means another actor won the race.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from sheet_tasks.engine.errors import TaskNotFoundError, TaskStateError
from sheet_tasks.engine.models import (
    FailureClass,
    RowInput,
    RowOutput,
    RowStatus,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStats,
    TaskStatus,
    TaskView,
    TerminalEvent,
)
from sheet_tasks.storage.alembic_runner import upgrade_head
from sheet_tasks.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from sheet_tasks.storage.sqlmodel_models import SheetTask, TaskEvent, TaskRowInput, TaskRowOutput

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default_user"


class TaskRepository:
    """Task queue persistence facade.

    `user_id` scopes the user-facing operations (list, get, cancel, delete,
    stats). Pass `user_id=None` for an operator/engine view across all users.
    Engine-owned operations (claim, progress, terminal commit) are never scoped.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str | None = DEFAULT_USER_ID,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.engine: Engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a task in `queueing`."""

        now = utc_now()
        created_at = payload.created_at or now
        task_id = payload.task_id or str(uuid4())
        blob = payload.task_file_blob
        with Session(self.engine) as session:
            row = SheetTask(
                task_id=task_id,
                user_id=self.user_id or DEFAULT_USER_ID,
                upload_batch_id=payload.upload_batch_id or str(uuid4()),
                task_type=payload.task_type,
                status=TaskStatus.QUEUEING.value,
                progress_percentage=0,
                original_filename=payload.original_filename,
                sheet_name=payload.sheet_name,
                file_mime_type=payload.file_mime_type,
                task_file_size=len(blob) if blob is not None else None,
                task_file_blob=blob,
                metadata_json=(
                    json.dumps(payload.metadata, ensure_ascii=False, sort_keys=True)
                    if payload.metadata is not None
                    else None
                ),
                created_at=to_db_datetime(created_at),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            _add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.QUEUEING,
                details={"task_type": payload.task_type, "upload_batch_id": row.upload_batch_id},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_queueing(
        self,
        *,
        worker_id: str,
        task_type: str | None = None,
    ) -> TaskView | None:
        """Atomically claim the oldest queueing task (FIFO by created_at, then id)."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(SheetTask).where(
                    SheetTask.status == TaskStatus.QUEUEING.value,
                )
                if task_type is not None:
                    statement = statement.where(SheetTask.task_type == task_type)
                candidate = session.exec(
                    statement.order_by(
                        col(SheetTask.created_at).asc(),
                        col(SheetTask.task_id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(SheetTask)
                    .where(
                        col(SheetTask.task_id) == candidate.task_id,
                        col(SheetTask.status) == TaskStatus.QUEUEING.value,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        started_at=to_db_datetime(now),
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Lost claim race for task %s, reselecting", candidate.task_id)
                    continue

                _add_event(
                    session=session,
                    task_id=candidate.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.QUEUEING,
                    status_to=TaskStatus.PROCESSING,
                    details={"worker_id": worker_id},
                )
                session.commit()
                claimed = session.exec(
                    select(SheetTask).where(SheetTask.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

    def update_progress(self, *, task_id: str, percentage: int) -> bool:
        """Persist progress while processing; never moves backwards."""

        percentage = max(0, min(100, percentage))
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SheetTask)
                .where(
                    col(SheetTask.task_id) == task_id,
                    col(SheetTask.status) == TaskStatus.PROCESSING.value,
                    col(SheetTask.progress_percentage) <= percentage,
                )
                .values(
                    progress_percentage=percentage,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def commit_terminal(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status: TaskStatus,
        error_message: str | None = None,
        failure_class: FailureClass | None = None,
        report_blob: bytes | None = None,
        report_mime_type: str | None = None,
        terminal_event: TerminalEvent | None = None,
        event_details: dict[str, object] | None = None,
    ) -> bool:
        """Move a processing task to its terminal state in one conditional update.

        The transition event (carrying `event_details`, e.g. failure diagnostics)
        and the optional `terminal` event are written in the same transaction as
        the status change.
        """

        if not status.is_terminal:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == TaskStatus.COMPLETED:
            values.update(
                completed_at=now,
                progress_percentage=100,
                results_file_blob=report_blob,
                results_file_size=len(report_blob) if report_blob is not None else None,
                results_mime_type=report_mime_type,
            )
        elif status == TaskStatus.FAILED:
            values.update(
                completed_at=now,
                error_message=error_message,
                failure_class=failure_class.value if failure_class is not None else None,
            )
        else:
            values.update(cancelled_at=now)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SheetTask)
                .where(
                    col(SheetTask.task_id) == task_id,
                    col(SheetTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Terminal commit %s for task %s lost: task is no longer processing",
                    status.value,
                    task_id,
                )
                return False
            _add_event(
                session=session,
                task_id=task_id,
                event_type=status.value,
                status_from=TaskStatus.PROCESSING,
                status_to=status,
                details=_transition_details(error_message, event_details),
            )
            if terminal_event is not None:
                _add_event(
                    session=session,
                    task_id=task_id,
                    event_type="terminal",
                    status_from=None,
                    status_to=status,
                    details=terminal_event.to_details(),
                )
            session.commit()
            return True

    def is_cancel_requested(self, *, task_id: str) -> bool:
        """True once the user asked to cancel, or the task left `processing`."""

        with Session(self.engine) as session:
            row = session.exec(select(SheetTask).where(SheetTask.task_id == task_id)).one_or_none()
        if row is None:
            return True
        return row.status != TaskStatus.PROCESSING.value or row.cancel_requested_at is not None

    def list_stale_processing(self, *, stale_after: timedelta) -> list[TaskView]:
        """Processing tasks whose record has not been touched for `stale_after`.

        Progress writes refresh `updated_at`, so a live worker keeps its task fresh.
        """

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(SheetTask)
                .where(
                    SheetTask.status == TaskStatus.PROCESSING.value,
                    col(SheetTask.updated_at) < cutoff,
                )
                .order_by(col(SheetTask.updated_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def cancel_task(self, *, task_id: str) -> TaskView:
        """Cancel a queueing task, or flag a processing task for cooperative cancel."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous == TaskStatus.QUEUEING:
                statement = (
                    sa_update(SheetTask)
                    .where(
                        col(SheetTask.task_id) == task_id,
                        col(SheetTask.status) == TaskStatus.QUEUEING.value,
                    )
                    .values(
                        status=TaskStatus.CANCELLED.value,
                        cancel_requested_at=now,
                        cancelled_at=now,
                        updated_at=now,
                    )
                )
                event_type, status_to = "cancelled", TaskStatus.CANCELLED
            elif previous == TaskStatus.PROCESSING:
                statement = (
                    sa_update(SheetTask)
                    .where(
                        col(SheetTask.task_id) == task_id,
                        col(SheetTask.status) == TaskStatus.PROCESSING.value,
                    )
                    .values(cancel_requested_at=now, updated_at=now)
                )
                event_type, status_to = "cancel_requested", TaskStatus.PROCESSING
            else:
                raise TaskStateError(f"Cannot cancel {previous.value} task (task_id={task_id}).")

            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            _add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def delete_task(self, *, task_id: str) -> None:
        """Delete a task that is not processing; row records cascade."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status == TaskStatus.PROCESSING.value:
                raise TaskStateError(
                    f"Cannot delete task in processing status; cancel it first (task_id={task_id}).",
                )
            result = session.exec(
                sa_delete(SheetTask).where(
                    col(SheetTask.task_id) == task_id,
                    col(SheetTask.status) != TaskStatus.PROCESSING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while deleting; "
                    f"please retry command (task_id={task_id}).",
                )
            session.commit()

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(self._scoped(select(SheetTask)).where(
                SheetTask.task_id == task_id,
            )).one_or_none()
        return _to_task_view(row) if row is not None else None

    def read_source_payload(self, *, task_id: str) -> bytes | None:
        """Return the uploaded sheet bytes of a task."""

        with Session(self.engine) as session:
            row = session.exec(select(SheetTask).where(SheetTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row.task_file_blob

    def read_result_payload(self, *, task_id: str) -> tuple[bytes, str | None] | None:
        """Return the rendered report bytes and MIME type of a completed task."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
        if row.results_file_blob is None:
            return None
        return row.results_file_blob, row.results_mime_type

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        upload_batch_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and upload batch."""

        with Session(self.engine) as session:
            statement = self._scoped(select(SheetTask))
            if status is not None:
                statement = statement.where(SheetTask.status == status.value)
            if upload_batch_id is not None:
                statement = statement.where(SheetTask.upload_batch_id == upload_batch_id)
            rows = session.exec(
                statement.order_by(col(SheetTask.created_at).desc()).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(self._scoped(select(SheetTask)).where(
                SheetTask.task_id == task_id,
            )).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def task_stats(self) -> TaskStats:
        """Count tasks by state and distinct upload batches."""

        with Session(self.engine) as session:
            rows = session.exec(self._scoped(select(SheetTask))).all()
        by_status = Counter(row.status for row in rows)
        return TaskStats(
            total_tasks=len(rows),
            queueing_tasks=by_status[TaskStatus.QUEUEING.value],
            processing_tasks=by_status[TaskStatus.PROCESSING.value],
            completed_tasks=by_status[TaskStatus.COMPLETED.value],
            cancelled_tasks=by_status[TaskStatus.CANCELLED.value],
            failed_tasks=by_status[TaskStatus.FAILED.value],
            total_upload_batches=len({row.upload_batch_id for row in rows}),
        )

    def _scoped(self, statement):  # noqa: ANN001, ANN202
        if self.user_id is None:
            return statement
        return statement.where(SheetTask.user_id == self.user_id)

    def _get_task_row(self, *, session: Session, task_id: str) -> SheetTask:
        row = session.exec(self._scoped(select(SheetTask)).where(
            SheetTask.task_id == task_id,
        )).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row


class RowStore:
    """Per-row inputs and outputs of tasks.

    Inputs are immutable once stored; outputs are written at most once per
    (task_id, row_number).
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def store_inputs(self, *, task_id: str, records: list[dict[str, Any]]) -> int:
        """Store parsed records as rows 1..n, skipping rows already stored."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            existing = set(
                session.exec(
                    select(TaskRowInput.row_number).where(TaskRowInput.task_id == task_id),
                ).all(),
            )
            inserted = 0
            for row_number, record in enumerate(records, start=1):
                if row_number in existing:
                    continue
                session.add(
                    TaskRowInput(
                        task_id=task_id,
                        row_number=row_number,
                        payload_json=json.dumps(record, ensure_ascii=False, sort_keys=True),
                        created_at=now,
                    ),
                )
                inserted += 1
            session.commit()
        return inserted

    def load_rows(self, task_id: str) -> list[RowInput]:
        """Row inputs of a task in row-number order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRowInput)
                .where(TaskRowInput.task_id == task_id)
                .order_by(col(TaskRowInput.row_number).asc()),
            ).all()
        return [
            RowInput(
                task_id=row.task_id,
                row_number=row.row_number,
                payload=json.loads(row.payload_json),
            )
            for row in rows
        ]

    def append_result(self, output: RowOutput) -> bool:
        """Persist one row output; False when the row already has one."""

        with Session(self.engine) as session:
            session.add(
                TaskRowOutput(
                    task_id=output.task_id,
                    row_number=output.row_number,
                    status=output.status.value,
                    method=output.method,
                    payload_json=json.dumps(output.payload, ensure_ascii=False, sort_keys=True),
                    error=output.error,
                    latency_ms=output.latency_ms,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Row %d of task %s already has a result, ignoring duplicate",
                    output.row_number,
                    output.task_id,
                )
                return False
        return True

    def list_results(self, task_id: str) -> list[RowOutput]:
        """Row outputs of a task in row-number order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRowOutput)
                .where(TaskRowOutput.task_id == task_id)
                .order_by(col(TaskRowOutput.row_number).asc()),
            ).all()
        return [
            RowOutput(
                task_id=row.task_id,
                row_number=row.row_number,
                status=RowStatus(row.status),
                payload=json.loads(row.payload_json),
                method=row.method,
                error=row.error,
                latency_ms=row.latency_ms,
            )
            for row in rows
        ]

    def completed_row_numbers(self, task_id: str) -> set[int]:
        with Session(self.engine) as session:
            numbers = session.exec(
                select(TaskRowOutput.row_number).where(TaskRowOutput.task_id == task_id),
            ).all()
        return set(numbers)


def _add_event(  # noqa: PLR0913
    *,
    session: Session,
    task_id: str,
    event_type: str,
    status_from: TaskStatus | None,
    status_to: TaskStatus | None,
    details: dict[str, object],
) -> None:
    session.add(
        TaskEvent(
            task_id=task_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _to_task_view(row: SheetTask) -> TaskView:
    metadata = json.loads(row.metadata_json) if row.metadata_json else None
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        upload_batch_id=row.upload_batch_id,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        progress_percentage=row.progress_percentage,
        original_filename=row.original_filename,
        sheet_name=row.sheet_name,
        file_mime_type=row.file_mime_type,
        task_file_size=row.task_file_size,
        results_file_size=row.results_file_size,
        results_mime_type=row.results_mime_type,
        metadata=metadata if isinstance(metadata, dict) else None,
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        cancelled_at=optional_utc(row.cancelled_at),
        cancel_requested_at=optional_utc(row.cancel_requested_at),
    )


def _transition_details(
    error_message: str | None,
    event_details: dict[str, object] | None,
) -> dict[str, object]:
    details: dict[str, object] = dict(event_details or {})
    if error_message:
        details["error_message"] = error_message
    return details
