from pathlib import Path

import allure
import pytest

from sheet_tasks.config import RetrySettings, Settings
from sheet_tasks.engine.retry import RetryPolicy

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SHEET_TASKS_DB_PATH",
        "SHEET_TASKS_WORKER_COUNT",
        "SHEET_TASKS_RETRY_DELAYS_SECONDS",
        "SHEET_TASKS_TASK_TYPE_FILTER",
        "SHEET_TASKS_STALE_PROCESSING_SECONDS",
        "SHEET_TASKS_RETRY_JITTER",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".sheet_tasks.db")
    assert settings.engine.worker_count == 1
    assert settings.engine.progress_every_rows == 10
    assert settings.engine.progress_interval_seconds == 5.0
    assert settings.engine.task_type_filter is None
    assert settings.retry.max_attempts == 3
    assert settings.retry.delays_seconds == (30.0, 60.0)
    assert settings.retry.jitter is False
    assert settings.engine.stale_processing_seconds == 1800.0
    settings.validate_for_engine()


def test_from_env_prefers_explicit_db_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_TASKS_DB_PATH", "/tmp/from-env.db")

    settings = Settings.from_env(db_path=Path("explicit.db"))

    assert settings.db_path == Path("explicit.db")


def test_from_env_parses_engine_and_retry_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_TASKS_WORKER_COUNT", "4")
    monkeypatch.setenv("SHEET_TASKS_TASK_TYPE_FILTER", " url-cleaning ")
    monkeypatch.setenv("SHEET_TASKS_RETRY_DELAYS_SECONDS", "1, 2.5,,4")
    monkeypatch.setenv("SHEET_TASKS_RETRY_BACKOFF", "Exponential")
    monkeypatch.setenv("SHEET_TASKS_API_KEY", "secret")
    monkeypatch.setenv("SHEET_TASKS_RETRY_JITTER", "yes")
    monkeypatch.setenv("SHEET_TASKS_STALE_PROCESSING_SECONDS", "0")

    settings = Settings.from_env()

    assert settings.engine.worker_count == 4
    assert settings.engine.task_type_filter == "url-cleaning"
    assert settings.retry.delays_seconds == (1.0, 2.5, 4.0)
    assert settings.retry.backoff == "exponential"
    assert settings.services.api_key == "secret"
    assert settings.retry.jitter is True
    assert settings.engine.stale_processing_seconds == 0.0
    assert RetryPolicy.from_settings(settings.retry).jitter is True


def test_from_env_rejects_invalid_delay_entry(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_TASKS_RETRY_DELAYS_SECONDS", "30,soon")

    with pytest.raises(ValueError, match="SHEET_TASKS_RETRY_DELAYS_SECONDS"):
        Settings.from_env()


def test_validate_for_engine_rejects_non_positive_worker_count() -> None:
    settings = Settings()
    settings.engine.worker_count = 0

    with pytest.raises(ValueError, match="SHEET_TASKS_WORKER_COUNT"):
        settings.validate_for_engine()


def test_validate_for_engine_rejects_unknown_backoff() -> None:
    settings = Settings(retry=RetrySettings(backoff="linear"))

    with pytest.raises(ValueError, match="Unsupported SHEET_TASKS_RETRY_BACKOFF"):
        settings.validate_for_engine()


def test_validate_for_engine_rejects_relative_service_url() -> None:
    settings = Settings()
    settings.services.search_url = "localhost:8082/search"

    with pytest.raises(ValueError, match="SHEET_TASKS_SEARCH_URL"):
        settings.validate_for_engine()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_TASKS_RETRY_JITTER", "maybe")

    with pytest.raises(ValueError, match="SHEET_TASKS_RETRY_JITTER"):
        Settings.from_env()
