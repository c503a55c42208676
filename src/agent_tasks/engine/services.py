"""Use-case services for agent task submission and status queries."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent_tasks.config import EngineSettings
from agent_tasks.engine.errors import ValidationError
from agent_tasks.engine.models import (
    ConversationMessage,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
)
from agent_tasks.engine.repository import TaskRepository

_HISTORY_ROLES = frozenset({"user", "assistant"})


@dataclass(slots=True)
class TaskStatusView:
    """What a submitter sees when polling a task."""

    task_id: str
    status: TaskStatus
    result: str | None
    error_kind: str | None
    error_message: str | None
    attempt_count: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)


class TaskService:
    """Validates submissions and exposes user-scoped task queries."""

    def __init__(self, *, repository: TaskRepository, engine_settings: EngineSettings) -> None:
        self.repository = repository
        self.engine_settings = engine_settings

    def submit(  # noqa: PLR0913
        self,
        *,
        user_id: str,
        description: str,
        history: Sequence[ConversationMessage] = (),
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
    ) -> TaskView:
        """Create a pending task; the caller polls ``status`` for the outcome."""

        normalized_user = user_id.strip()
        if not normalized_user:
            raise ValidationError("user_id must not be empty.")
        text = description.strip()
        if not text:
            raise ValidationError("Task description must not be empty.")
        if len(text) > self.engine_settings.max_description_chars:
            raise ValidationError(
                "Task description is too long "
                f"({len(text)} > {self.engine_settings.max_description_chars} characters).",
            )
        for message in history:
            if message.role not in _HISTORY_ROLES:
                raise ValidationError(
                    f"Unsupported conversation role {message.role!r}; "
                    "expected 'user' or 'assistant'.",
                )
        timeout = (
            self.engine_settings.per_task_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        if timeout <= 0:
            raise ValidationError("timeout_seconds must be > 0.")
        if timeout >= self.engine_settings.stale_attempt_seconds:
            raise ValidationError(
                "timeout_seconds must be below the stale attempt threshold "
                f"({self.engine_settings.stale_attempt_seconds}s).",
            )
        retries = self.engine_settings.max_retry_attempts if max_retries is None else max_retries
        if retries < 0:
            raise ValidationError("max_retries must be >= 0.")

        return self.repository.create_task(
            TaskCreate(
                user_id=normalized_user,
                description=text,
                conversation_history=list(history),
                max_retries=retries,
                timeout_seconds=timeout,
            ),
        )

    def status(self, *, task_id: str, user_id: str) -> TaskStatusView:
        """Current state of a task; terminal results are stable across calls."""

        task = self.repository.get_task(task_id=task_id, user_id=user_id)
        return to_status_view(task)

    def cancel(self, *, task_id: str, user_id: str) -> TaskView:
        return self.repository.request_cancel(task_id=task_id, user_id=user_id)

    def list_tasks(
        self,
        *,
        user_id: str,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        return self.repository.list_tasks(user_id=user_id, status=status, limit=limit)

    def details(self, *, task_id: str, user_id: str) -> TaskDetails:
        return self.repository.get_task_details(task_id=task_id, user_id=user_id)


def to_status_view(task: TaskView) -> TaskStatusView:
    stats = task.stats
    return TaskStatusView(
        task_id=task.task_id,
        status=task.status,
        result=task.result,
        error_kind=task.error_kind.value if task.error_kind is not None else None,
        error_message=task.error_message,
        attempt_count=task.attempt_count,
        created_at=task.created_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
        metadata={
            "iterations": stats.iterations,
            "tools_used": stats.tools_used,
            "duration_ms": stats.duration_ms,
            "input_tokens": stats.input_tokens,
            "output_tokens": stats.output_tokens,
            "tokens_used": stats.tokens_used,
        },
    )
