from pathlib import Path

import allure
from sqlalchemy import inspect, text

from sheet_tasks.engine.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    tables = set(inspect(repository.engine).get_table_names())
    repository.close()

    assert version == "20261018_0001"
    assert str(journal_mode).lower() == "wal"
    assert {"tasks", "task_row_inputs", "task_row_outputs", "task_events"} <= tables
