"""Chat evaluation: ask the Q&A service and score the answer against a golden one."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from sheet_tasks.clients.base import QaAnswer, QaClient, SimilarityClient
from sheet_tasks.engine.errors import TaskFatalError
from sheet_tasks.engine.models import FailureClass, RowInput, RowOutput, RowStatus
from sheet_tasks.engine.pipelines.base import (
    SERVICE_ERRORS,
    RowOutcome,
    describe_error,
    failure_details,
    text_field,
)
from sheet_tasks.engine.retry import RetryController
from sheet_tasks.engine.urls import citation_similarity

logger = logging.getLogger(__name__)


class ChatEvaluationPipeline:
    """Per-row chat evaluation.

    A Q&A failure (retries exhausted or non-retryable) fails the whole task: the
    Q&A service is the subject under evaluation. A similarity failure only fails
    the row.
    """

    def __init__(
        self,
        *,
        qa_client: QaClient,
        similarity_client: SimilarityClient,
        retry: RetryController,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._qa = qa_client
        self._similarity = similarity_client
        self._retry = retry
        self._clock = clock

    def process(self, row: RowInput) -> RowOutcome:
        question = text_field(row.payload, "question")
        golden_answer = text_field(row.payload, "golden_answer") or ""
        golden_citations = _citations(row.payload.get("golden_citations"))
        payload: dict[str, Any] = {
            "question": question,
            "golden_answer": golden_answer,
            "golden_citations": golden_citations,
            "api_answer": None,
            "api_citations": [],
            "answer_similarity": None,
            "citation_similarity": None,
        }

        if question is None:
            return RowOutcome.failure(
                RowOutput(
                    task_id=row.task_id,
                    row_number=row.row_number,
                    status=RowStatus.INVALID_INPUT,
                    payload=payload,
                    error="Row has no question",
                ),
                reason="missing_question",
            )

        started = self._clock()
        try:
            answer: QaAnswer = self._retry.call(
                lambda: self._qa.ask(question),
                operation=f"qa.ask task={row.task_id} row={row.row_number}",
            )
        except SERVICE_ERRORS as error:
            reason = f"Q&A service unavailable at row {row.row_number}: {describe_error(error)}"
            logger.error("Escalating task %s: %s", row.task_id, reason)
            raise TaskFatalError(
                reason,
                failure_class=FailureClass.SERVICE_UNAVAILABLE,
                details=failure_details(error),
                output=RowOutput(
                    task_id=row.task_id,
                    row_number=row.row_number,
                    status=RowStatus.API_ERROR,
                    payload=payload,
                    error=describe_error(error),
                    latency_ms=_elapsed_ms(started, self._clock()),
                ),
            ) from error
        latency_ms = _elapsed_ms(started, self._clock())

        payload["api_answer"] = answer.answer
        payload["api_citations"] = list(answer.citations)
        payload["citation_similarity"] = citation_similarity(golden_citations, answer.citations)

        try:
            payload["answer_similarity"] = self._retry.call(
                lambda: self._similarity.score(golden_answer, answer.answer),
                operation=f"similarity.score task={row.task_id} row={row.row_number}",
            )
        except SERVICE_ERRORS as error:
            return RowOutcome.failure(
                RowOutput(
                    task_id=row.task_id,
                    row_number=row.row_number,
                    status=RowStatus.FAILED,
                    payload=payload,
                    error=f"Similarity service failed: {describe_error(error)}",
                    latency_ms=latency_ms,
                ),
                reason="similarity_unavailable",
            )

        return RowOutcome.success(
            RowOutput(
                task_id=row.task_id,
                row_number=row.row_number,
                status=RowStatus.SUCCESS,
                payload=payload,
                latency_ms=latency_ms,
            ),
        )


def _citations(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _elapsed_ms(started: float, finished: float) -> int:
    return max(0, int(round((finished - started) * 1000)))
