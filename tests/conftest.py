"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from sheet_tasks.clients.base import QaAnswer, SearchHit
from sheet_tasks.engine.models import TaskCreate, TaskView
from sheet_tasks.engine.registry import TaskHandlerRegistry, build_default_registry
from sheet_tasks.engine.repository import RowStore, TaskRepository
from sheet_tasks.engine.retry import RetryController, RetryPolicy
from sheet_tasks.engine.worker import EngineWorker


class FakeSearchClient:
    """Search fake: query -> hits, or an exception to raise."""

    def __init__(self) -> None:
        self.responses: dict[str, list[SearchHit] | Exception] = {}
        self.calls: list[str] = []

    def search(self, query: str) -> list[SearchHit]:
        self.calls.append(query)
        response = self.responses.get(query, [])
        if isinstance(response, Exception):
            raise response
        return list(response)


class FakeQaClient:
    """Q&A fake: question -> answer, or an exception to raise."""

    def __init__(self) -> None:
        self.responses: dict[str, QaAnswer | Exception] = {}
        self.calls: list[str] = []
        self.on_call: Callable[[str], None] | None = None

    def ask(self, question: str) -> QaAnswer:
        self.calls.append(question)
        if self.on_call is not None:
            self.on_call(question)
        response = self.responses.get(question, QaAnswer(answer=f"answer to {question}"))
        if isinstance(response, Exception):
            raise response
        return response


class FakeSimilarityClient:
    """Similarity fake returning a fixed score, or raising a configured error."""

    def __init__(self) -> None:
        self.value = 0.8
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    def score(self, text_a: str, text_b: str) -> float:
        self.calls.append((text_a, text_b))
        if self.error is not None:
            raise self.error
        return self.value


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "tasks.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def row_store(repository: TaskRepository) -> RowStore:
    return RowStore(repository.engine)


@pytest.fixture()
def fake_search() -> FakeSearchClient:
    return FakeSearchClient()


@pytest.fixture()
def fake_qa() -> FakeQaClient:
    return FakeQaClient()


@pytest.fixture()
def fake_similarity() -> FakeSimilarityClient:
    return FakeSimilarityClient()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def retry(sleeps: list[float]) -> RetryController:
    return RetryController(
        policy=RetryPolicy(max_attempts=3, delays_seconds=(30.0, 60.0)),
        sleep=sleeps.append,
    )


@pytest.fixture()
def registry(
    fake_qa: FakeQaClient,
    fake_search: FakeSearchClient,
    fake_similarity: FakeSimilarityClient,
    retry: RetryController,
) -> TaskHandlerRegistry:
    return build_default_registry(
        qa_client=fake_qa,
        search_client=fake_search,
        similarity_client=fake_similarity,
        retry=retry,
    )


@pytest.fixture()
def make_worker(
    repository: TaskRepository,
    registry: TaskHandlerRegistry,
) -> Callable[..., EngineWorker]:
    def _make(**kwargs: object) -> EngineWorker:
        options: dict[str, object] = {
            "repository": repository,
            "registry": registry,
            "worker_id": "worker-test",
            "poll_interval_seconds": 0.0,
        }
        options.update(kwargs)
        return EngineWorker(**options)  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def enqueue_rows(repository: TaskRepository) -> Callable[..., TaskView]:
    """Enqueue a task whose source payload is a JSON list of row records."""

    def _enqueue(task_type: str, rows: list[dict[str, object]], **kwargs: object) -> TaskView:
        return repository.enqueue_task(
            TaskCreate(
                task_type=task_type,
                task_file_blob=json.dumps(rows).encode("utf-8"),
                file_mime_type="application/json",
                original_filename="rows.json",
                **kwargs,  # type: ignore[arg-type]
            ),
        )

    return _enqueue
