from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from sheet_tasks import __version__
from sheet_tasks.clients.base import SearchHit
from sheet_tasks.engine import controllers
from sheet_tasks.main import sheet_tasks

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("CLI Ops"),
]


class _FakeClients:
    def __init__(self, qa, search, similarity) -> None:  # noqa: ANN001
        self.qa = qa
        self.search = search
        self.similarity = similarity

    def __enter__(self) -> _FakeClients:
        return self

    def __exit__(self, *_: object) -> None:
        return None


@pytest.fixture()
def fake_services(monkeypatch, fake_qa, fake_search, fake_similarity):
    monkeypatch.setenv("SHEET_TASKS_RETRY_DELAYS_SECONDS", "0")
    monkeypatch.setattr(
        controllers,
        "build_service_clients",
        lambda settings: _FakeClients(fake_qa, fake_search, fake_similarity),
    )
    return fake_search


def _upload(runner: CliRunner, db_path: Path, sheet: Path, task_type: str) -> str:
    result = runner.invoke(
        sheet_tasks,
        [
            "tasks",
            "upload",
            "--db-path",
            str(db_path),
            "--file",
            str(sheet),
            "--task-type",
            task_type,
        ],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=([a-f0-9-]+)", result.output)
    assert match is not None
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(sheet_tasks, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_upload_run_inspect_and_report(tmp_path: Path, fake_services) -> None:
    db_path = tmp_path / "cli.db"
    sheet = tmp_path / "urls.csv"
    sheet.write_text(
        "url,parsed_title\nhttps://a.example/1,\nhttps://b.example/lost-story,\n",
        encoding="utf-8",
    )
    fake_services.responses["https://a.example/1"] = [SearchHit(url="https://clean.example/1")]
    runner = CliRunner()

    task_id = _upload(runner, db_path, sheet, "url-cleaning")

    listed = runner.invoke(sheet_tasks, ["tasks", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0
    assert f"{task_id} type=url-cleaning status=queueing" in listed.output

    run = runner.invoke(sheet_tasks, ["engine", "run", "--db-path", str(db_path), "--once"])
    assert run.exit_code == 0, run.output
    assert "processed=1 completed=1" in run.output
    assert "rows=2" in run.output

    inspect = runner.invoke(
        sheet_tasks,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspect.exit_code == 0
    assert "Status: completed" in inspect.output
    assert "Progress: 100%" in inspect.output
    assert "terminal" in inspect.output

    report_path = tmp_path / "report.json"
    report = runner.invoke(
        sheet_tasks,
        [
            "tasks",
            "report",
            "--db-path",
            str(db_path),
            "--task-id",
            task_id,
            "--output",
            str(report_path),
        ],
    )
    assert report.exit_code == 0
    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload["success_count"] == 1
    assert payload["failed_count"] == 1

    stats = runner.invoke(sheet_tasks, ["tasks", "stats", "--db-path", str(db_path)])
    assert "completed: 1" in stats.output
    assert "Upload batches: 1" in stats.output


def test_cli_cancel_and_delete(tmp_path: Path) -> None:
    db_path = tmp_path / "cli-cancel.db"
    sheet = tmp_path / "rows.json"
    sheet.write_text(json.dumps([{"question": "Q?", "golden_answer": "A"}]), encoding="utf-8")
    runner = CliRunner()
    task_id = _upload(runner, db_path, sheet, "chat-evaluation")

    cancel = runner.invoke(
        sheet_tasks,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert cancel.exit_code == 0
    assert f"Task cancelled: {task_id}" in cancel.output

    again = runner.invoke(
        sheet_tasks,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert again.exit_code != 0
    assert "Cannot cancel cancelled task" in again.output

    delete = runner.invoke(
        sheet_tasks,
        ["tasks", "delete", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert delete.exit_code == 0
    missing = runner.invoke(
        sheet_tasks,
        ["tasks", "delete", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert missing.exit_code != 0
    assert "Task not found" in missing.output


def test_cli_upload_rejects_unreadable_sheet(tmp_path: Path) -> None:
    sheet = tmp_path / "broken.json"
    sheet.write_text('{"rows": 5', encoding="utf-8")

    result = CliRunner().invoke(
        sheet_tasks,
        [
            "tasks",
            "upload",
            "--db-path",
            str(tmp_path / "cli-broken.db"),
            "--file",
            str(sheet),
            "--task-type",
            "url-cleaning",
        ],
    )

    assert result.exit_code != 0
    assert "Invalid JSON" in result.output
