"""Task type -> row pipeline registry."""

from __future__ import annotations

from sheet_tasks.clients.base import QaClient, SearchClient, SimilarityClient
from sheet_tasks.engine.errors import UnknownTaskTypeError
from sheet_tasks.engine.models import CHAT_EVALUATION, URL_CLEANING
from sheet_tasks.engine.pipelines import (
    ChatEvaluationPipeline,
    RowPipeline,
    UrlCleaningPipeline,
)
from sheet_tasks.engine.retry import RetryController


class TaskHandlerRegistry:
    """Maps task type tags to row pipelines."""

    def __init__(self) -> None:
        self._pipelines: dict[str, RowPipeline] = {}

    def register(self, task_type: str, pipeline: RowPipeline) -> None:
        normalized = task_type.strip()
        if not normalized:
            raise ValueError("task_type must not be empty")
        if normalized in self._pipelines:
            raise ValueError(f"Pipeline already registered for task_type={normalized!r}")
        self._pipelines[normalized] = pipeline

    def resolve(self, task_type: str) -> RowPipeline:
        pipeline = self._pipelines.get(task_type)
        if pipeline is None:
            raise UnknownTaskTypeError(task_type)
        return pipeline

    def task_types(self) -> list[str]:
        return sorted(self._pipelines)


def build_default_registry(
    *,
    qa_client: QaClient,
    search_client: SearchClient,
    similarity_client: SimilarityClient,
    retry: RetryController,
) -> TaskHandlerRegistry:
    """Registry with the chat-evaluation and url-cleaning pipelines."""

    registry = TaskHandlerRegistry()
    registry.register(
        CHAT_EVALUATION,
        ChatEvaluationPipeline(
            qa_client=qa_client,
            similarity_client=similarity_client,
            retry=retry,
        ),
    )
    registry.register(
        URL_CLEANING,
        UrlCleaningPipeline(search_client=search_client, retry=retry),
    )
    return registry
