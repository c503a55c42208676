"""SQLModel ORM tables for the task store and the question bank."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTask(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_tasks_queue", "queue_state", "run_after", "created_at"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    description: str = Field(sa_column=Column(Text, nullable=False))
    conversation_history_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    queue_state: str
    result: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    attempt_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    timeout_seconds: float = Field(default=120.0)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    iterations: int = Field(default=0)
    tools_used: int = Field(default=0)
    duration_ms: int = Field(default=0)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTaskToolCall(SQLModel, table=True):
    __tablename__ = "agent_task_tool_calls"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_task_tool_calls_task_seq", "task_id", "seq", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    seq: int
    attempt: int
    iteration: int
    tool_name: str
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output: str | None = Field(default=None, sa_column=Column(Text))
    success: bool
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTaskEvent(SQLModel, table=True):
    __tablename__ = "agent_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuestionCategory(SQLModel, table=True):
    __tablename__ = "question_categories"  # type: ignore[bad-override]
    __table_args__ = (Index("uq_question_categories_user_name", "user_id", "name", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Qualification(SQLModel, table=True):
    __tablename__ = "qualifications"  # type: ignore[bad-override]
    __table_args__ = (Index("uq_qualifications_user_name", "user_id", "name", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Question(SQLModel, table=True):
    __tablename__ = "questions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_questions_user_category", "user_id", "category_id", "is_active"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    question_text: str = Field(sa_column=Column(Text, nullable=False))
    answer: str | None = Field(default=None, sa_column=Column(Text))
    answer_pl: str | None = Field(default=None, sa_column=Column(Text))
    tags: str | None = Field(default=None, sa_column=Column(Text))
    category_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("question_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    qualification_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("qualifications.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
