from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_tasks.engine.models import ConversationMessage, TaskStatus
from agent_tasks.engine.repository import TaskRepository
from agent_tasks.main import agent_tasks

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("AGENT_TASKS_LLM_BACKEND", "echo")
    monkeypatch.setenv("AGENT_TASKS_USER_ID", "cli_user")
    return tmp_path / "cli.db"


def _invoke(*args: str):
    return CliRunner().invoke(agent_tasks, list(args))


def _submit(db_path: Path, description: str, *extra: str) -> str:
    result = _invoke(
        "tasks",
        "submit",
        "--db-path",
        str(db_path),
        "--description",
        description,
        *extra,
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_submit_worker_and_inspect(cli_db: Path) -> None:
    task_id = _submit(cli_db, "Summarize my question bank.")

    listed = _invoke("tasks", "list", "--db-path", str(cli_db), "--status", "pending")
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output

    worker = _invoke("worker", "run", "--db-path", str(cli_db), "--once")
    assert worker.exit_code == 0, worker.output
    assert "processed=1 succeeded=1" in worker.output

    inspected = _invoke("tasks", "inspect", "--db-path", str(cli_db), "--task-id", task_id)
    assert inspected.exit_code == 0, inspected.output
    assert f"Task: {task_id}" in inspected.output
    assert "Status: completed" in inspected.output
    assert "Result: echo: Summarize my question bank." in inspected.output
    assert "Tool calls: 0" in inspected.output
    assert "succeeded" in inspected.output


def test_submit_reports_limits_and_reads_history(cli_db: Path, tmp_path: Path) -> None:
    history_file = tmp_path / "history.json"
    history_file.write_text(
        json.dumps([{"role": "user", "content": "I prepare for a Python interview."}]),
        "utf-8",
    )

    result = _invoke(
        "tasks",
        "submit",
        "--db-path",
        str(cli_db),
        "--description",
        "Suggest a category.",
        "--history-file",
        str(history_file),
        "--timeout-seconds",
        "30",
        "--max-retries",
        "1",
    )

    assert result.exit_code == 0, result.output
    assert "status=pending max_retries=1 timeout=30s" in result.output
    task_id = re.search(r"task_id=(\S+)", result.output).group(1)  # type: ignore[union-attr]
    repository = TaskRepository(db_path=cli_db)
    try:
        task = repository.get_task(task_id=task_id, user_id="cli_user")
    finally:
        repository.close()
    assert task.conversation_history == [
        ConversationMessage(role="user", content="I prepare for a Python interview."),
    ]


def test_submit_rejects_malformed_history(cli_db: Path, tmp_path: Path) -> None:
    history_file = tmp_path / "history.json"
    history_file.write_text(json.dumps({"role": "user"}), "utf-8")

    result = _invoke(
        "tasks",
        "submit",
        "--db-path",
        str(cli_db),
        "--description",
        "Anything.",
        "--history-file",
        str(history_file),
    )

    assert result.exit_code == 1
    assert "JSON" in result.output


def test_cancel_waiting_task(cli_db: Path) -> None:
    task_id = _submit(cli_db, "Delete duplicates.")

    cancelled = _invoke("tasks", "cancel", "--db-path", str(cli_db), "--task-id", task_id)
    again = _invoke("tasks", "cancel", "--db-path", str(cli_db), "--task-id", task_id)
    failed = _invoke("tasks", "list", "--db-path", str(cli_db), "--status", "failed")
    inspected = _invoke("tasks", "inspect", "--db-path", str(cli_db), "--task-id", task_id)

    assert cancelled.exit_code == 0, cancelled.output
    assert f"Task canceled: {task_id}" in cancelled.output
    assert again.exit_code == 1
    assert "cannot be cancelled" in again.output
    assert "Tasks: 1" in failed.output
    assert "cancel_requested pending -> processing" in inspected.output
    assert "failed processing -> failed" in inspected.output


def test_inspect_hides_other_users_tasks(cli_db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    task_id = _submit(cli_db, "Private task.")
    monkeypatch.setenv("AGENT_TASKS_USER_ID", "someone_else")

    result = _invoke("tasks", "inspect", "--db-path", str(cli_db), "--task-id", task_id)

    assert result.exit_code == 1
    assert "Task not found" in result.output


def test_worker_requires_api_key_for_anthropic(
    cli_db: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_TASKS_LLM_BACKEND", "anthropic")

    result = _invoke("worker", "run", "--db-path", str(cli_db), "--once")

    assert result.exit_code == 1
    assert "ANTHROPIC_API_KEY" in result.output


def test_tools_list(cli_db: Path) -> None:
    result = _invoke("tools", "list", "--db-path", str(cli_db))

    assert result.exit_code == 0, result.output
    assert "Tools: 15" in result.output
    assert "create_question required=[questionText, answer, answerPl]" in result.output


def test_questions_seed_is_idempotent_and_searchable(cli_db: Path) -> None:
    first = _invoke("questions", "seed", "--db-path", str(cli_db))
    second = _invoke("questions", "seed", "--db-path", str(cli_db))

    assert first.exit_code == 0, first.output
    assert "user=cli_user: categories=3 qualifications=2 questions=5" in first.output
    assert "categories=0 qualifications=0 questions=0" in second.output

    listed = _invoke("questions", "list", "--db-path", str(cli_db))
    assert "Questions: 5" in listed.output
    assert "[uncategorized] How would you design a rate limiter?" in listed.output

    searched = _invoke("questions", "list", "--db-path", str(cli_db), "--search", "python")
    assert "Questions: 2" in searched.output

    too_short = _invoke("questions", "list", "--db-path", str(cli_db), "--search", "p")
    assert too_short.exit_code == 1
    assert "at least 2 characters" in too_short.output


def test_worker_loop_drains_queue(cli_db: Path) -> None:
    for index in range(3):
        _submit(cli_db, f"Task number {index}.")

    db = str(cli_db)
    result = _invoke("worker", "run", "--db-path", db, "--workers", "1", "--max-tasks", "2")
    drained = _invoke("worker", "run", "--db-path", str(cli_db), "--workers", "1")

    assert "processed=2 succeeded=2" in result.output
    assert "processed=1 succeeded=1" in drained.output
    repository = TaskRepository(db_path=cli_db)
    try:
        completed = repository.list_tasks(user_id="cli_user", status=TaskStatus.COMPLETED)
    finally:
        repository.close()
    assert len(completed) == 3
