"""URL cleaning: resolve a raw URL to a canonical one through the search service."""

from __future__ import annotations

import logging
from typing import Any

from sheet_tasks.clients.base import SearchClient, SearchHit
from sheet_tasks.engine.models import CleaningMethod, RowInput, RowOutput, RowStatus
from sheet_tasks.engine.pipelines.base import (
    SERVICE_ERRORS,
    RowOutcome,
    describe_error,
    text_field,
)
from sheet_tasks.engine.retry import RetryController
from sheet_tasks.engine.urls import extract_title

logger = logging.getLogger(__name__)


class UrlCleaningPipeline:
    """Direct search, then title search, then give up.

    Every failure here is row-local, including an unavailable search service.
    """

    def __init__(self, *, search_client: SearchClient, retry: RetryController) -> None:
        self._search = search_client
        self._retry = retry

    def process(self, row: RowInput) -> RowOutcome:
        url = text_field(row.payload, "url")
        payload: dict[str, Any] = {
            "url": url,
            "parsed_title": text_field(row.payload, "parsed_title"),
            "cleaned_url": None,
            "search_query": None,
            "result_title": None,
        }

        if url is None:
            return self._failure(
                row,
                status=RowStatus.URL_PARSE_ERROR,
                method=CleaningMethod.TITLE_EXTRACTION_FAILED,
                payload=payload,
                error="Row has no url",
            )

        try:
            hits = self._run_search(row, url)
            if hits:
                return self._success(row, CleaningMethod.DIRECT_SEARCH, payload, url, hits[0])

            title = extract_title(url)
            if title is None:
                return self._failure(
                    row,
                    status=RowStatus.URL_PARSE_ERROR,
                    method=CleaningMethod.TITLE_EXTRACTION_FAILED,
                    payload=payload,
                    error=f"Cannot extract a title from url: {url}",
                )

            hits = self._run_search(row, title)
            if hits:
                return self._success(row, CleaningMethod.TITLE_SEARCH, payload, title, hits[0])
        except SERVICE_ERRORS as error:
            logger.warning(
                "Search unavailable for task %s row %d: %s",
                row.task_id,
                row.row_number,
                describe_error(error),
            )
            return self._failure(
                row,
                status=RowStatus.API_ERROR,
                method=CleaningMethod.API_UNAVAILABLE,
                payload=payload,
                error=describe_error(error),
            )

        payload["search_query"] = title
        return self._failure(
            row,
            status=RowStatus.FAILED,
            method=CleaningMethod.BOTH_FAILED,
            payload=payload,
            error="No search results for url or title",
        )

    def _run_search(self, row: RowInput, query: str) -> list[SearchHit]:
        return self._retry.call(
            lambda: self._search.search(query),
            operation=f"search task={row.task_id} row={row.row_number}",
        )

    @staticmethod
    def _success(
        row: RowInput,
        method: CleaningMethod,
        payload: dict[str, Any],
        query: str,
        hit: SearchHit,
    ) -> RowOutcome:
        payload.update(cleaned_url=hit.url, search_query=query, result_title=hit.title)
        return RowOutcome.success(
            RowOutput(
                task_id=row.task_id,
                row_number=row.row_number,
                status=RowStatus.SUCCESS,
                method=method.value,
                payload=payload,
            ),
        )

    @staticmethod
    def _failure(
        row: RowInput,
        *,
        status: RowStatus,
        method: CleaningMethod,
        payload: dict[str, Any],
        error: str,
    ) -> RowOutcome:
        return RowOutcome.failure(
            RowOutput(
                task_id=row.task_id,
                row_number=row.row_number,
                status=status,
                method=method.value,
                payload=payload,
                error=error,
            ),
            reason=method.value,
        )
