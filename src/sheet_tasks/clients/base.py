"""Client interfaces for the Q&A, search and similarity services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class QaAnswer:
    """Answer returned by the question-answering service."""

    answer: str
    citations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SearchHit:
    """One search result."""

    url: str
    title: str | None = None


class ServiceCallError(Exception):
    """External service answered with a non-success status."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class ServiceResponseError(ServiceCallError):
    """External service answered, but the payload does not match the contract."""


class QaClient(Protocol):
    """Protocol implemented by question-answering clients."""

    def ask(self, question: str) -> QaAnswer:
        """Ask one question and return the answer with its citations."""


class SearchClient(Protocol):
    """Protocol implemented by search clients."""

    def search(self, query: str) -> list[SearchHit]:
        """Run one query and return ranked hits (possibly empty)."""


class SimilarityClient(Protocol):
    """Protocol implemented by similarity-scoring clients."""

    def score(self, text_a: str, text_b: str) -> float:
        """Return similarity of two texts in [0, 1]."""
