"""Domain models for the agent task queue and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """User-visible task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class QueueState(str, Enum):
    """Scheduler-internal job states."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED_FINAL = "failed_final"


CLAIMABLE_QUEUE_STATES = (QueueState.QUEUED, QueueState.RETRYING)


class ErrorKind(str, Enum):
    """Error taxonomy recorded on failed tasks and tool results."""

    VALIDATION = "validation"
    TOOL_EXECUTION = "tool_execution"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


@dataclass(slots=True)
class ConversationMessage:
    """Prior conversation turn replayed ahead of the task description."""

    role: str
    content: str


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting an agent task."""

    user_id: str
    description: str
    task_id: str | None = None
    conversation_history: list[ConversationMessage] = field(default_factory=list)
    max_retries: int = 3
    timeout_seconds: float = 120.0
    run_after: datetime | None = None


@dataclass(slots=True)
class ExecutionStats:
    """Per-attempt execution counters, updated in place by the executor."""

    iterations: int = 0
    tools_used: int = 0
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, CLI and worker logic."""

    task_id: str
    user_id: str
    description: str
    status: TaskStatus
    queue_state: QueueState
    result: str | None
    error_kind: ErrorKind | None
    error_message: str | None
    attempt_count: int
    max_retries: int
    timeout_seconds: float
    run_after: datetime
    worker_id: str | None
    heartbeat_at: datetime | None
    cancel_requested_at: datetime | None
    conversation_history: list[ConversationMessage]
    stats: ExecutionStats
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class ToolCallLogEntry:
    """One tool invocation observed by the executor."""

    iteration: int
    tool_name: str
    input: dict[str, Any]
    success: bool
    output: str | None
    error: str | None
    timestamp: datetime


@dataclass(slots=True)
class ToolCallView:
    """Persisted tool-call log row."""

    seq: int
    task_id: str
    attempt: int
    iteration: int
    tool_name: str
    input: dict[str, Any]
    success: bool
    output: str | None
    error: str | None
    created_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class TaskDetails:
    """Task with its tool-call log and audit trail."""

    task: TaskView
    tool_calls: list[ToolCallView]
    events: list[TaskEventView]
