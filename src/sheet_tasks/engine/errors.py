"""Domain exceptions raised by the task engine."""

from __future__ import annotations

from sheet_tasks.engine.models import FailureClass, RowOutput


class TaskNotFoundError(RuntimeError):
    """Task id does not exist for the current user scope."""


class TaskStateError(RuntimeError):
    """Requested transition is not allowed from the task's current state."""


class UnknownTaskTypeError(LookupError):
    """No row pipeline is registered for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No handler registered for task_type={task_type!r}")
        self.task_type = task_type


class SourcePayloadError(ValueError):
    """Source sheet payload is missing or cannot be parsed into rows."""


class TaskFatalError(Exception):
    """Row failure that escalates the whole task to `failed`.

    The failed row output, when present, is persisted before the terminal commit
    so partial results stay queryable.
    """

    def __init__(
        self,
        reason: str,
        *,
        failure_class: FailureClass = FailureClass.SERVICE_UNAVAILABLE,
        output: RowOutput | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.failure_class = failure_class
        self.output = output
        self.details = details or {}
