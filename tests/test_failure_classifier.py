import allure
import httpx

from sheet_tasks.clients.base import ServiceCallError, ServiceResponseError
from sheet_tasks.engine.failure_classifier import (
    SERVICE_FAILURE_CLASSIFIER_VERSION,
    classify_service_failure,
    is_retryable,
)
from sheet_tasks.engine.models import ServiceFailureClass

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Retries & Failures"),
]


def test_classifier_version_is_stable() -> None:
    assert SERVICE_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_maps_timeouts_before_transport_errors() -> None:
    classification = classify_service_failure(httpx.ReadTimeout("read timed out"))

    assert classification.failure_class == ServiceFailureClass.TIMEOUT
    assert classification.retryable is True


def test_classifier_maps_connection_errors() -> None:
    classification = classify_service_failure(httpx.ConnectError("connection refused"))

    assert classification.failure_class == ServiceFailureClass.CONNECTION
    assert classification.retryable is True


def test_classifier_maps_status_codes() -> None:
    server = classify_service_failure(ServiceCallError("qa", "HTTP 503", status_code=503))
    limited = classify_service_failure(ServiceCallError("qa", "HTTP 429", status_code=429))
    client = classify_service_failure(ServiceCallError("qa", "HTTP 404", status_code=404))

    assert server.failure_class == ServiceFailureClass.SERVER_ERROR
    assert limited.failure_class == ServiceFailureClass.RATE_LIMITED
    assert client.failure_class == ServiceFailureClass.CLIENT_ERROR
    assert server.retryable
    assert not limited.retryable
    assert not client.retryable


def test_classifier_treats_payload_errors_as_non_retryable() -> None:
    error = ServiceResponseError("similarity", "score out of range: 1.5", status_code=200)

    classification = classify_service_failure(error)

    assert classification.failure_class == ServiceFailureClass.INVALID_RESPONSE
    assert is_retryable(error) is False


def test_classifier_falls_back_to_unknown() -> None:
    classification = classify_service_failure(RuntimeError("something odd"))

    assert classification.failure_class == ServiceFailureClass.UNKNOWN
    assert classification.retryable is False
    details = classification.to_event_details()
    assert details["failure_class"] == "unknown"


def test_transient_message_patterns_apply_only_to_io_errors() -> None:
    reset = classify_service_failure(OSError("connection reset by peer"))
    bug = classify_service_failure(ValueError("timeout must be positive"))

    assert reset.failure_class == ServiceFailureClass.CONNECTION
    assert reset.matched_pattern == "connection reset"
    assert reset.retryable is True
    assert bug.failure_class == ServiceFailureClass.UNKNOWN
    assert bug.retryable is False
