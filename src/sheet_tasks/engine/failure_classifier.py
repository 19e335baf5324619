"""Deterministic classification of external service failures for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from sheet_tasks.clients.base import ServiceCallError, ServiceResponseError
from sheet_tasks.engine.models import ServiceFailureClass

SERVICE_FAILURE_CLASSIFIER_VERSION = 1

_RETRYABLE_CLASSES = frozenset(
    {
        ServiceFailureClass.TIMEOUT,
        ServiceFailureClass.CONNECTION,
        ServiceFailureClass.SERVER_ERROR,
    },
)
_TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "connection aborted",
    "network error",
    "service unavailable",
)
_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR_MIN = 500


@dataclass(slots=True)
class ServiceFailureClassification:
    """Normalized failure classification result."""

    failure_class: ServiceFailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class in _RETRYABLE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and task events."""

        return {
            "classifier_version": SERVICE_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_service_failure(error: BaseException) -> ServiceFailureClassification:  # noqa: PLR0911
    """Classify one raised exception into a deterministic retry class."""

    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_exception",
        )
    if isinstance(error, httpx.TransportError | ConnectionError):
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.CONNECTION,
            reason_code="connection_error",
            matched_rule="transport_exception",
        )
    if isinstance(error, ServiceResponseError):
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.INVALID_RESPONSE,
            reason_code=f"{error.service}_invalid_response",
            matched_rule="response_contract",
        )
    if isinstance(error, ServiceCallError) and error.status_code is not None:
        return _classify_status_code(error)

    pattern = None
    if isinstance(error, OSError | httpx.HTTPError):
        pattern = _first_match(str(error).lower(), _TRANSIENT_MESSAGE_PATTERNS)
    if pattern is not None:
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.CONNECTION,
            reason_code="transient_message",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )
    return ServiceFailureClassification(
        failure_class=ServiceFailureClass.UNKNOWN,
        reason_code="unclassified",
        matched_rule="fallback_non_retryable",
    )


def is_retryable(error: BaseException) -> bool:
    """Default retryability predicate for the retry controller."""

    return classify_service_failure(error).retryable


def _classify_status_code(error: ServiceCallError) -> ServiceFailureClassification:
    status_code = error.status_code or 0
    if status_code == _HTTP_TOO_MANY_REQUESTS:
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.RATE_LIMITED,
            reason_code=f"{error.service}_rate_limited",
            matched_rule="http_429",
        )
    if status_code >= _HTTP_SERVER_ERROR_MIN:
        return ServiceFailureClassification(
            failure_class=ServiceFailureClass.SERVER_ERROR,
            reason_code=f"{error.service}_http_{status_code}",
            matched_rule="http_5xx",
        )
    return ServiceFailureClassification(
        failure_class=ServiceFailureClass.CLIENT_ERROR,
        reason_code=f"{error.service}_http_{status_code}",
        matched_rule="http_4xx",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
