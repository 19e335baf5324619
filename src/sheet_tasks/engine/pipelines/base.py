"""Row pipeline interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from sheet_tasks.clients.base import ServiceCallError
from sheet_tasks.engine.failure_classifier import classify_service_failure
from sheet_tasks.engine.models import RowInput, RowOutput
from sheet_tasks.engine.retry import RetryExhaustedError

# Errors a pipeline treats as "the service is unavailable". Anything else is a
# bug and reaches the engine loop as an internal error.
SERVICE_ERRORS: tuple[type[BaseException], ...] = (
    RetryExhaustedError,
    ServiceCallError,
    httpx.HTTPError,
    TimeoutError,
    ConnectionError,
)


@dataclass(slots=True)
class RowOutcome:
    """Result of processing one row."""

    ok: bool
    output: RowOutput
    reason: str | None = None

    @classmethod
    def success(cls, output: RowOutput) -> RowOutcome:
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, output: RowOutput, reason: str) -> RowOutcome:
        return cls(ok=False, output=output, reason=reason)


class RowPipeline(Protocol):
    """Protocol implemented by per-task-type row processors.

    Row-local failures come back as `RowOutcome.failure`; failures that must end
    the whole task raise `TaskFatalError`.
    """

    def process(self, row: RowInput) -> RowOutcome:
        """Process one row input into exactly one row output."""


def text_field(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def describe_error(error: BaseException) -> str:
    if isinstance(error, RetryExhaustedError):
        return f"{error.last_error} (after {error.attempts} attempts)"
    return str(error) or error.__class__.__name__


def failure_details(error: BaseException) -> dict[str, object]:
    """Classifier diagnostics of the underlying service error, for task events."""

    attempts = 1
    if isinstance(error, RetryExhaustedError):
        attempts = error.attempts
        error = error.last_error
    details = classify_service_failure(error).to_event_details()
    details["attempts"] = attempts
    return details
