"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from agent_tasks.engine.repository import TaskRepository
from agent_tasks.questions.repository import QuestionBankRepository
from agent_tasks.storage.common import utc_now
from agent_tasks.tools.registry import ToolRegistry, build_default_registry


class FakeClock:
    """Manually advanced clock for scheduler tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "agent-tasks.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path=db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def question_repository(
    db_path: Path,
    task_repository: TaskRepository,
) -> Iterator[QuestionBankRepository]:
    repository = QuestionBankRepository(db_path=db_path)
    yield repository
    repository.close()


@pytest.fixture()
def registry(question_repository: QuestionBankRepository) -> ToolRegistry:
    return build_default_registry(question_repository)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ANTHROPIC_API_KEY", "AGENT_TASKS_ANTHROPIC_API_KEY", "AGENT_TASKS_USER_ID"):
        monkeypatch.delenv(name, raising=False)
