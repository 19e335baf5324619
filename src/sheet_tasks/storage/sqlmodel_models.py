"""SQLModel ORM tables for task and row storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    PrimaryKeyConstraint,
    Text,
)
from sqlmodel import Field, SQLModel


class SheetTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "created_at", "task_id"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    upload_batch_id: str = Field(index=True)
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    progress_percentage: int = Field(default=0)
    original_filename: str | None = None
    sheet_name: str | None = None
    file_mime_type: str | None = None
    task_file_size: int | None = None
    results_file_size: int | None = None
    task_file_blob: bytes | None = Field(default=None, sa_column=Column(LargeBinary))
    results_file_blob: bytes | None = Field(default=None, sa_column=Column(LargeBinary))
    results_mime_type: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TaskRowInput(SQLModel, table=True):
    __tablename__ = "task_row_inputs"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("task_id", "row_number", name="pk_task_row_inputs"),)

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    row_number: int
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRowOutput(SQLModel, table=True):
    __tablename__ = "task_row_outputs"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "row_number", name="pk_task_row_outputs"),
        Index("idx_task_row_outputs_task_status", "task_id", "status"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    row_number: int
    status: str
    method: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    error: str | None = Field(default=None, sa_column=Column(Text))
    latency_ms: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
