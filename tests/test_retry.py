import allure
import httpx
import pytest

from sheet_tasks.clients.base import ServiceCallError, ServiceResponseError
from sheet_tasks.engine.retry import RetryController, RetryExhaustedError, RetryPolicy

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Retries & Failures"),
]


class _Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_retry_succeeds_after_transient_failures_with_fixed_delays() -> None:
    sleeps: list[float] = []
    controller = RetryController(sleep=sleeps.append)
    flaky = _Flaky(
        [
            ServiceCallError("search", "HTTP 503", status_code=503),
            httpx.ReadTimeout("read timed out"),
        ],
    )

    assert controller.call(flaky, operation="search") == "ok"
    assert flaky.calls == 3
    assert sleeps == [30.0, 60.0]


def test_retry_raises_exhausted_after_max_attempts() -> None:
    sleeps: list[float] = []
    controller = RetryController(sleep=sleeps.append)
    last = ServiceCallError("qa", "HTTP 502", status_code=502)
    flaky = _Flaky([ServiceCallError("qa", "HTTP 500", status_code=500)] * 2 + [last])

    with pytest.raises(RetryExhaustedError) as raised:
        controller.call(flaky, operation="qa.ask")

    assert raised.value.attempts == 3
    assert raised.value.last_error is last
    assert raised.value.operation == "qa.ask"
    assert flaky.calls == 3
    assert sleeps == [30.0, 60.0]


def test_retry_reraises_non_retryable_error_immediately() -> None:
    sleeps: list[float] = []
    controller = RetryController(sleep=sleeps.append)
    error = ServiceResponseError("similarity", "missing numeric field 'score'")
    flaky = _Flaky([error])

    with pytest.raises(ServiceResponseError) as raised:
        controller.call(flaky)

    assert raised.value is error
    assert flaky.calls == 1
    assert sleeps == []


def test_fixed_schedule_repeats_last_delay_when_budget_is_larger() -> None:
    policy = RetryPolicy(max_attempts=5, delays_seconds=(1.0, 2.0))

    assert [policy.delay_after(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 2.0, 2.0]


def test_exponential_backoff_is_capped() -> None:
    policy = RetryPolicy(backoff="exponential", base_seconds=30.0, max_seconds=100.0)

    assert [policy.delay_after(attempt) for attempt in (1, 2, 3, 4)] == [30.0, 60.0, 100.0, 100.0]


def test_custom_retryable_predicate_is_respected() -> None:
    sleeps: list[float] = []
    controller = RetryController(
        policy=RetryPolicy(max_attempts=2, delays_seconds=(0.5,)),
        is_retryable=lambda error: isinstance(error, KeyError),
        sleep=sleeps.append,
    )
    flaky = _Flaky([KeyError("transient")])

    assert controller.call(flaky) == "ok"
    assert sleeps == [0.5]


def test_rate_limited_call_surfaces_immediately() -> None:
    sleeps: list[float] = []
    controller = RetryController(sleep=sleeps.append)
    flaky = _Flaky([ServiceCallError("qa", "HTTP 429", status_code=429)])

    with pytest.raises(ServiceCallError):
        controller.call(flaky, operation="qa.ask")

    assert flaky.calls == 1
    assert sleeps == []


def test_jitter_keeps_delay_within_schedule() -> None:
    sleeps: list[float] = []
    controller = RetryController(
        policy=RetryPolicy(max_attempts=2, delays_seconds=(10.0,), jitter=True),
        sleep=sleeps.append,
    )
    flaky = _Flaky([ServiceCallError("search", "HTTP 503", status_code=503)])

    assert controller.call(flaky) == "ok"
    assert len(sleeps) == 1
    assert 0.0 <= sleeps[0] <= 10.0
