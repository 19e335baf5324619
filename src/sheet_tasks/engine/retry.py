"""Bounded retry with backoff around a single external call."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from sheet_tasks.config import RetrySettings
from sheet_tasks.engine.failure_classifier import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt budget and delay schedule.

    `fixed` uses `delays_seconds[n - 1]` before attempt `n + 1` (the last entry
    repeats when the schedule is shorter than the budget); `exponential` uses
    `min(max_seconds, base_seconds * 2 ** (n - 1))`.
    """

    max_attempts: int = 3
    delays_seconds: tuple[float, ...] = (30.0, 60.0)
    backoff: str = "fixed"
    base_seconds: float = 30.0
    max_seconds: float = 900.0
    jitter: bool = False

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            delays_seconds=settings.delays_seconds,
            backoff=settings.backoff,
            base_seconds=settings.base_seconds,
            max_seconds=settings.max_seconds,
            jitter=settings.jitter,
        )

    def delay_after(self, attempt: int) -> float:
        """Delay to wait after failed `attempt` (1-based) before the next one."""

        if self.backoff == "exponential":
            return min(self.max_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))
        if not self.delays_seconds:
            return 0.0
        index = min(attempt - 1, len(self.delays_seconds) - 1)
        return self.delays_seconds[max(index, 0)]


class RetryExhaustedError(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryController:
    """Runs a no-argument callable under a retry policy.

    Non-retryable errors surface immediately as the original exception. The
    controller knows nothing about the wrapped client.
    """

    def __init__(
        self,
        *,
        policy: RetryPolicy | None = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._is_retryable = is_retryable
        self._sleep = sleep
        self._random = random.Random()  # noqa: S311

    def call(self, fn: Callable[[], T], *, operation: str = "call") -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as error:
                if not self._is_retryable(error):
                    logger.warning("%s failed with non-retryable error: %s", operation, error)
                    raise
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "%s exhausted %d attempts, last error: %s",
                        operation,
                        attempt,
                        error,
                    )
                    raise RetryExhaustedError(operation, attempt, error) from error
                delay = self._compute_delay(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    operation,
                    attempt,
                    self.policy.max_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)

    def _compute_delay(self, attempt: int) -> float:
        delay = self.policy.delay_after(attempt)
        if self.policy.jitter and delay > 0:
            return self._random.uniform(0, delay)
        return delay
