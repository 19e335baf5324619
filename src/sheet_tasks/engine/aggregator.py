"""Report building and the completing terminal commit."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from statistics import fmean
from typing import Any, Protocol

from sheet_tasks.engine.models import (
    FailureClass,
    RowOutput,
    RowStatus,
    TaskStatus,
    TaskView,
    TerminalEvent,
)
from sheet_tasks.engine.repository import RowStore, TaskRepository

logger = logging.getLogger(__name__)

EMPTY_RESULT_MESSAGE = "No rows were processed"


@dataclass(slots=True)
class Report:
    """Aggregated view of every row output of one task."""

    task_id: str
    task_type: str
    row_count: int
    success_count: int
    failed_count: int
    api_error_count: int
    url_parse_error_count: int
    invalid_input_count: int
    mean_answer_similarity: float | None
    mean_citation_similarity: float | None
    mean_latency_ms: float | None
    method_counts: dict[str, int] = field(default_factory=dict)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def row_counts(self) -> dict[str, int]:
        return {
            "row_count": self.row_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "api_error_count": self.api_error_count,
            "url_parse_error_count": self.url_parse_error_count,
            "invalid_input_count": self.invalid_input_count,
        }


class ReportRenderer(Protocol):
    """Protocol implemented by result payload renderers."""

    mime_type: str

    def render(self, report: Report) -> bytes:
        """Serialize a report into the task's result payload."""


class JsonReportRenderer:
    mime_type = "application/json"

    def render(self, report: Report) -> bytes:
        return json.dumps(asdict(report), ensure_ascii=False, indent=2).encode("utf-8")


@dataclass(slots=True)
class FinalizeResult:
    """Outcome of finalizing one task."""

    event: TerminalEvent
    committed: bool
    report: Report | None = None

    @property
    def status(self) -> TaskStatus:
        return self.event.final_status


def build_report(task: TaskView, outputs: list[RowOutput]) -> Report:
    """Aggregate row outputs (already in row order) into a report."""

    statuses = Counter(output.status for output in outputs)
    methods = Counter(output.method for output in outputs if output.method)
    return Report(
        task_id=task.task_id,
        task_type=task.task_type,
        row_count=len(outputs),
        success_count=statuses[RowStatus.SUCCESS],
        failed_count=statuses[RowStatus.FAILED],
        api_error_count=statuses[RowStatus.API_ERROR],
        url_parse_error_count=statuses[RowStatus.URL_PARSE_ERROR],
        invalid_input_count=statuses[RowStatus.INVALID_INPUT],
        mean_answer_similarity=_mean(output.payload.get("answer_similarity") for output in outputs),
        mean_citation_similarity=_mean(
            output.payload.get("citation_similarity") for output in outputs
        ),
        mean_latency_ms=_mean(output.latency_ms for output in outputs),
        method_counts=dict(sorted(methods.items())),
        rows=[
            {
                "row_number": output.row_number,
                "status": output.status.value,
                "method": output.method,
                "error": output.error,
                "latency_ms": output.latency_ms,
                **output.payload,
            }
            for output in outputs
        ],
    )


class ResultAggregator:
    """Builds the report from stored row outputs and completes the task."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        row_store: RowStore,
        renderer: ReportRenderer | None = None,
    ) -> None:
        self._repository = repository
        self._row_store = row_store
        self._renderer = renderer or JsonReportRenderer()

    def finalize(self, task: TaskView) -> FinalizeResult:
        outputs = self._row_store.list_results(task.task_id)
        if not outputs:
            event = TerminalEvent(
                task_id=task.task_id,
                final_status=TaskStatus.FAILED,
                row_counts={"row_count": 0},
                error_message=EMPTY_RESULT_MESSAGE,
            )
            committed = self._repository.commit_terminal(
                task_id=task.task_id,
                status=TaskStatus.FAILED,
                error_message=EMPTY_RESULT_MESSAGE,
                failure_class=FailureClass.EMPTY_RESULT,
                terminal_event=event,
            )
            logger.warning("Task %s failed: %s", task.task_id, EMPTY_RESULT_MESSAGE)
            return FinalizeResult(event=event, committed=committed)

        report = build_report(task, outputs)
        blob = self._renderer.render(report)
        event = TerminalEvent(
            task_id=task.task_id,
            final_status=TaskStatus.COMPLETED,
            row_counts=report.row_counts(),
        )
        committed = self._repository.commit_terminal(
            task_id=task.task_id,
            status=TaskStatus.COMPLETED,
            report_blob=blob,
            report_mime_type=self._renderer.mime_type,
            terminal_event=event,
        )
        logger.info(
            "Task %s completed: %d rows, %d success, %d failed, %d api errors",
            task.task_id,
            report.row_count,
            report.success_count,
            report.failed_count,
            report.api_error_count,
        )
        return FinalizeResult(event=event, committed=committed, report=report)


def _mean(values: Any) -> float | None:  # noqa: ANN401
    numbers = [
        float(value)
        for value in values
        if isinstance(value, int | float) and not isinstance(value, bool)
    ]
    if not numbers:
        return None
    return round(fmean(numbers), 6)


def count_rows(outputs: list[RowOutput]) -> dict[str, int]:
    """Row counters by status, in the same shape as `Report.row_counts`."""

    statuses = Counter(output.status for output in outputs)
    return {
        "row_count": len(outputs),
        "success_count": statuses[RowStatus.SUCCESS],
        "failed_count": statuses[RowStatus.FAILED],
        "api_error_count": statuses[RowStatus.API_ERROR],
        "url_parse_error_count": statuses[RowStatus.URL_PARSE_ERROR],
        "invalid_input_count": statuses[RowStatus.INVALID_INPUT],
    }
