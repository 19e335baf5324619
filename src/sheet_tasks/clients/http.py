"""httpx-backed clients for the external services.

Clients never retry on their own: every call goes through the engine's retry
controller, which decides retryability from the raised exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from sheet_tasks.clients.base import (
    QaAnswer,
    SearchHit,
    ServiceCallError,
    ServiceResponseError,
)
from sheet_tasks.config import ServiceSettings

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SheetTasksEngine/0.1"
_ERROR_PREVIEW_CHARS = 200


class _JsonServiceClient:
    """POST-JSON client wrapper with timeout and auth header configuration."""

    service = "service"

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._client.post(self._url, json=payload)
        if not response.is_success:
            logger.debug(
                "%s returned HTTP %s: %s",
                self.service,
                response.status_code,
                response.text[:_ERROR_PREVIEW_CHARS],
            )
            raise ServiceCallError(
                self.service,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as error:
            raise ServiceResponseError(
                self.service,
                f"invalid JSON response: {error}",
                status_code=response.status_code,
            ) from error
        if not isinstance(data, dict):
            raise ServiceResponseError(
                self.service,
                "response must be a JSON object",
                status_code=response.status_code,
            )
        return data

    def close(self) -> None:
        self._client.close()


class HttpQaClient(_JsonServiceClient):
    """Question-answering client: `{"question"}` -> `{"answer", "citations"}`."""

    service = "qa"

    def ask(self, question: str) -> QaAnswer:
        data = self._post({"question": question})
        answer = data.get("answer")
        if not isinstance(answer, str):
            raise ServiceResponseError(self.service, "missing string field 'answer'")
        citations_raw = data.get("citations") or []
        if not isinstance(citations_raw, list):
            raise ServiceResponseError(self.service, "field 'citations' must be a list")
        citations = [str(item) for item in citations_raw if isinstance(item, str) and item.strip()]
        return QaAnswer(answer=answer, citations=citations)


class HttpSearchClient(_JsonServiceClient):
    """Search client: `{"query"}` -> `{"results": [{"url", "title"}]}`."""

    service = "search"

    def search(self, query: str) -> list[SearchHit]:
        data = self._post({"query": query})
        results = data.get("results") or []
        if not isinstance(results, list):
            raise ServiceResponseError(self.service, "field 'results' must be a list")
        hits: list[SearchHit] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not isinstance(url, str) or not url.strip():
                continue
            title = item.get("title")
            hits.append(SearchHit(url=url.strip(), title=title if isinstance(title, str) else None))
        return hits


class HttpSimilarityClient(_JsonServiceClient):
    """Similarity client: `{"text_a", "text_b"}` -> `{"score"}` in [0, 1]."""

    service = "similarity"

    def score(self, text_a: str, text_b: str) -> float:
        data = self._post({"text_a": text_a, "text_b": text_b})
        value = data.get("score")
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ServiceResponseError(self.service, "missing numeric field 'score'")
        score = float(value)
        if not 0.0 <= score <= 1.0:
            raise ServiceResponseError(self.service, f"score out of range: {score}")
        return score


@dataclass(slots=True)
class ServiceClients:
    """Bundle of live clients built from settings."""

    qa: HttpQaClient
    search: HttpSearchClient
    similarity: HttpSimilarityClient

    def close(self) -> None:
        self.qa.close()
        self.search.close()
        self.similarity.close()

    def __enter__(self) -> ServiceClients:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_service_clients(
    settings: ServiceSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ServiceClients:
    """Build the three service clients sharing one API key policy."""

    return ServiceClients(
        qa=HttpQaClient(
            url=settings.qa_url,
            timeout_seconds=settings.qa_timeout_seconds,
            api_key=settings.api_key,
            transport=transport,
        ),
        search=HttpSearchClient(
            url=settings.search_url,
            timeout_seconds=settings.search_timeout_seconds,
            api_key=settings.api_key,
            transport=transport,
        ),
        similarity=HttpSimilarityClient(
            url=settings.similarity_url,
            timeout_seconds=settings.similarity_timeout_seconds,
            api_key=settings.api_key,
            transport=transport,
        ),
    )
