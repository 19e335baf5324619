"""Domain models for the sheet task engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

CHAT_EVALUATION = "chat-evaluation"
URL_CLEANING = "url-cleaning"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUEING = "queueing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class FailureClass(str, Enum):
    """Task-level failure classes written alongside the `failed` state."""

    UNKNOWN_TASK_TYPE = "unknown_task_type"
    SOURCE_PAYLOAD_UNREADABLE = "source_payload_unreadable"
    SERVICE_UNAVAILABLE = "service_unavailable"
    EMPTY_RESULT = "empty_result"
    INTERNAL_ERROR = "internal_error"


class ServiceFailureClass(str, Enum):
    """Normalized failure classes of one external service call."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    CLIENT_ERROR = "client_error"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN = "unknown"


class RowStatus(str, Enum):
    """Outcome status persisted on every row output."""

    SUCCESS = "success"
    FAILED = "failed"
    API_ERROR = "api_error"
    URL_PARSE_ERROR = "url_parse_error"
    INVALID_INPUT = "invalid_input"


class CleaningMethod(str, Enum):
    """How a url-cleaning row reached its result."""

    DIRECT_SEARCH = "direct_search"
    TITLE_SEARCH = "title_search"
    BOTH_FAILED = "both_failed"
    API_UNAVAILABLE = "api_unavailable"
    TITLE_EXTRACTION_FAILED = "title_extraction_failed"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing one sheet task."""

    task_type: str
    task_file_blob: bytes | None = None
    task_id: str | None = None
    upload_batch_id: str | None = None
    original_filename: str | None = None
    sheet_name: str | None = None
    file_mime_type: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    user_id: str
    upload_batch_id: str
    task_type: str
    status: TaskStatus
    progress_percentage: int
    original_filename: str | None
    sheet_name: str | None
    file_mime_type: str | None
    task_file_size: int | None
    results_file_size: int | None
    results_mime_type: str | None
    metadata: dict[str, Any] | None
    error_message: str | None
    failure_class: FailureClass | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_requested_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskStats:
    """Per-user counters by lifecycle state."""

    total_tasks: int
    queueing_tasks: int
    processing_tasks: int
    completed_tasks: int
    cancelled_tasks: int
    failed_tasks: int
    total_upload_batches: int


@dataclass(slots=True)
class RowInput:
    """One parsed source record, keyed by (task_id, row_number)."""

    task_id: str
    row_number: int
    payload: dict[str, Any]


@dataclass(slots=True)
class RowOutput:
    """One result record produced by exactly one pipeline execution."""

    task_id: str
    row_number: int
    status: RowStatus
    payload: dict[str, Any] = field(default_factory=dict)
    method: str | None = None
    error: str | None = None
    latency_ms: int | None = None


@dataclass(slots=True)
class TerminalEvent:
    """Terminal outcome emitted once per task for upstream observers."""

    task_id: str
    final_status: TaskStatus
    row_counts: dict[str, int]
    error_message: str | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "final_status": self.final_status.value,
            "row_counts": dict(self.row_counts),
            "error_message": self.error_message,
        }
