"""Runtime configuration for the task engine and its external services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_BACKOFF_MODES = ("fixed", "exponential")


@dataclass(slots=True)
class EngineSettings:
    """Worker loop, claim and progress settings."""

    worker_id: str = "worker-1"
    worker_count: int = 1
    poll_interval_seconds: float = 2.0
    progress_every_rows: int = 10
    progress_interval_seconds: float = 5.0
    task_type_filter: str | None = None
    stale_processing_seconds: float = 1800.0


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy applied to every external service call."""

    max_attempts: int = 3
    delays_seconds: tuple[float, ...] = (30.0, 60.0)
    backoff: str = "fixed"
    base_seconds: float = 30.0
    max_seconds: float = 900.0
    jitter: bool = False


@dataclass(slots=True)
class ServiceSettings:
    """Endpoints and timeouts of the Q&A, search and similarity services."""

    qa_url: str = "http://localhost:8081/ask"
    search_url: str = "http://localhost:8082/search"
    similarity_url: str = "http://localhost:8083/score"
    api_key: str | None = None
    qa_timeout_seconds: float = 120.0
    search_timeout_seconds: float = 30.0
    similarity_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".sheet_tasks.db")
    user_id: str = "default_user"
    engine: EngineSettings = field(default_factory=EngineSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    services: ServiceSettings = field(default_factory=ServiceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SHEET_TASKS_DB_PATH", ".sheet_tasks.db")),
            user_id=os.getenv("SHEET_TASKS_USER_ID", "default_user"),
            engine=EngineSettings(
                worker_id=os.getenv("SHEET_TASKS_WORKER_ID", "worker-1"),
                worker_count=int(os.getenv("SHEET_TASKS_WORKER_COUNT", "1")),
                poll_interval_seconds=float(
                    os.getenv("SHEET_TASKS_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                progress_every_rows=int(os.getenv("SHEET_TASKS_PROGRESS_EVERY_ROWS", "10")),
                progress_interval_seconds=float(
                    os.getenv("SHEET_TASKS_PROGRESS_INTERVAL_SECONDS", "5.0"),
                ),
                task_type_filter=os.getenv("SHEET_TASKS_TASK_TYPE_FILTER", "").strip() or None,
                stale_processing_seconds=float(
                    os.getenv("SHEET_TASKS_STALE_PROCESSING_SECONDS", "1800"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("SHEET_TASKS_RETRY_MAX_ATTEMPTS", "3")),
                delays_seconds=_parse_delays(os.getenv("SHEET_TASKS_RETRY_DELAYS_SECONDS", "30,60")),
                backoff=os.getenv("SHEET_TASKS_RETRY_BACKOFF", "fixed").strip().lower(),
                base_seconds=float(os.getenv("SHEET_TASKS_RETRY_BASE_SECONDS", "30")),
                max_seconds=float(os.getenv("SHEET_TASKS_RETRY_MAX_SECONDS", "900")),
                jitter=_env_bool("SHEET_TASKS_RETRY_JITTER", default=False),
            ),
            services=ServiceSettings(
                qa_url=os.getenv("SHEET_TASKS_QA_URL", "http://localhost:8081/ask"),
                search_url=os.getenv("SHEET_TASKS_SEARCH_URL", "http://localhost:8082/search"),
                similarity_url=os.getenv(
                    "SHEET_TASKS_SIMILARITY_URL",
                    "http://localhost:8083/score",
                ),
                api_key=os.getenv("SHEET_TASKS_API_KEY") or None,
                qa_timeout_seconds=float(os.getenv("SHEET_TASKS_QA_TIMEOUT_SECONDS", "120")),
                search_timeout_seconds=float(
                    os.getenv("SHEET_TASKS_SEARCH_TIMEOUT_SECONDS", "30"),
                ),
                similarity_timeout_seconds=float(
                    os.getenv("SHEET_TASKS_SIMILARITY_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate_for_engine(self) -> None:
        """Raise configuration error if engine or service settings are invalid."""

        if self.engine.worker_count <= 0:
            raise ValueError("SHEET_TASKS_WORKER_COUNT must be a positive integer.")
        if self.engine.poll_interval_seconds < 0:
            raise ValueError("SHEET_TASKS_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.engine.progress_every_rows <= 0:
            raise ValueError("SHEET_TASKS_PROGRESS_EVERY_ROWS must be a positive integer.")
        if self.engine.progress_interval_seconds < 0:
            raise ValueError("SHEET_TASKS_PROGRESS_INTERVAL_SECONDS must be >= 0.")
        if self.engine.stale_processing_seconds < 0:
            raise ValueError("SHEET_TASKS_STALE_PROCESSING_SECONDS must be >= 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("SHEET_TASKS_RETRY_MAX_ATTEMPTS must be a positive integer.")
        if self.retry.backoff not in SUPPORTED_BACKOFF_MODES:
            raise ValueError(
                f"Unsupported SHEET_TASKS_RETRY_BACKOFF: {self.retry.backoff!r}. "
                f"Expected one of {', '.join(SUPPORTED_BACKOFF_MODES)}.",
            )
        if any(delay < 0 for delay in self.retry.delays_seconds):
            raise ValueError("SHEET_TASKS_RETRY_DELAYS_SECONDS must not contain negative values.")
        for name, value in (
            ("SHEET_TASKS_QA_URL", self.services.qa_url),
            ("SHEET_TASKS_SEARCH_URL", self.services.search_url),
            ("SHEET_TASKS_SIMILARITY_URL", self.services.similarity_url),
        ):
            _validate_service_url(name, value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _parse_delays(raw: str) -> tuple[float, ...]:
    delays: list[float] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            delays.append(float(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid SHEET_TASKS_RETRY_DELAYS_SECONDS entry: {token!r}",
            ) from error
    return tuple(delays)


def _validate_service_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
