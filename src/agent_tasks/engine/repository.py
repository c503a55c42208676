"""SQLModel repository for the agent task queue."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_tasks.engine.errors import NotFoundError
from agent_tasks.engine.models import (
    CLAIMABLE_QUEUE_STATES,
    ConversationMessage,
    ErrorKind,
    ExecutionStats,
    QueueState,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    ToolCallLogEntry,
    ToolCallView,
)
from agent_tasks.storage.alembic_runner import upgrade_head
from agent_tasks.storage.common import (
    build_sqlite_engine,
    ensure_user,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_tasks.storage.sqlmodel_models import AgentTask, AgentTaskEvent, AgentTaskToolCall

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

_UPDATABLE_FIELDS = frozenset(
    {"result", "error_kind", "error_message", "attempt_count", "started_at", "completed_at"},
)


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state change is a single ``UPDATE ... WHERE <expected state>``; a
    ``rowcount`` other than one means another worker or request won the race and
    the method returns ``False`` (or ``None`` for claims).
    """

    def __init__(self, *, db_path: Path, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Persist a new pending task and enqueue it."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            ensure_user(session, payload.user_id)
            row = AgentTask(
                task_id=task_id,
                user_id=payload.user_id,
                description=payload.description,
                conversation_history_json=json.dumps(
                    [asdict(message) for message in payload.conversation_history],
                    ensure_ascii=False,
                ),
                status=TaskStatus.PENDING.value,
                queue_state=QueueState.QUEUED.value,
                attempt_count=0,
                max_retries=payload.max_retries,
                timeout_seconds=payload.timeout_seconds,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"max_retries": payload.max_retries},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str, user_id: str) -> TaskView:
        """Return the task owned by ``user_id``; foreign tasks are reported as missing."""

        with Session(self.engine) as session:
            row = self._owned_row(session, task_id=task_id, user_id=user_id)
            return _to_task_view(row)

    def update_status(
        self,
        *,
        task_id: str,
        status: TaskStatus,
        expected_status: TaskStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Atomically move the public status, optionally applying extra fields.

        The update is guarded by ``expected_status`` (the current status when
        omitted); it returns ``False`` when the guard no longer holds.
        """

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AgentTask, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            current = expected_status or TaskStatus(row.status)
            if status not in _ALLOWED_TRANSITIONS[current]:
                raise ValueError(f"Illegal status transition {current.value} -> {status.value}")

            values: dict[str, Any] = {
                "status": status.value,
                "updated_at": to_db_datetime(now),
            }
            for name, value in fields.items():
                if isinstance(value, datetime):
                    value = to_db_datetime(value)
                elif isinstance(value, ErrorKind):
                    value = value.value
                values[name] = value
            if status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
                values.setdefault("completed_at", to_db_datetime(now))
                values["queue_state"] = (
                    QueueState.SUCCEEDED.value
                    if status is TaskStatus.COMPLETED
                    else QueueState.FAILED_FINAL.value
                )

            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.status) == current.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if status is not current:
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="status_changed",
                    status_from=current,
                    status_to=status,
                    details={},
                )
            session.commit()
            return True

    def claim_next_ready_task(
        self,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> TaskView | None:
        """Atomically claim the oldest task that is ready to run."""

        while True:
            current_time = now or utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(AgentTask)
                    .where(
                        col(AgentTask.queue_state).in_(
                            [state.value for state in CLAIMABLE_QUEUE_STATES],
                        ),
                        col(AgentTask.run_after) <= to_db_datetime(current_time),
                        col(AgentTask.cancel_requested_at).is_(None),
                    )
                    .order_by(col(AgentTask.run_after).asc(), col(AgentTask.created_at).asc())
                    .limit(1),
                ).one_or_none()
            if candidate is None:
                return None

            claimed = self.claim_task(
                task_id=candidate.task_id,
                worker_id=worker_id,
                now=current_time,
            )
            if claimed is not None:
                return claimed

    def claim_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        now: datetime | None = None,
    ) -> TaskView | None:
        """Claim one specific task; ``None`` when another worker got it first."""

        current_time = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            row = session.get(AgentTask, task_id)
            if row is None:
                return None
            previous = TaskStatus(row.status)
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.queue_state).in_(
                        [state.value for state in CLAIMABLE_QUEUE_STATES],
                    ),
                    col(AgentTask.run_after) <= current_time,
                    col(AgentTask.cancel_requested_at).is_(None),
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    queue_state=QueueState.RUNNING.value,
                    attempt_count=col(AgentTask.attempt_count) + 1,
                    started_at=func.coalesce(col(AgentTask.started_at), current_time),
                    heartbeat_at=current_time,
                    worker_id=worker_id,
                    updated_at=current_time,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            session.expire_all()
            claimed = session.exec(select(AgentTask).where(AgentTask.task_id == task_id)).one()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=previous,
                status_to=TaskStatus.PROCESSING,
                details={"worker_id": worker_id, "attempt": claimed.attempt_count},
            )
            session.commit()
            return _to_task_view(claimed)

    def touch_task(self, *, task_id: str, worker_id: str) -> bool:
        """Update heartbeat for a task this worker is running."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.queue_state) == QueueState.RUNNING.value,
                    col(AgentTask.worker_id) == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def complete_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        result: str,
        stats: ExecutionStats,
    ) -> bool:
        """Mark a running task as completed with its final answer."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(AgentTask)
                .where(*self._owned_running(task_id=task_id, worker_id=worker_id))
                .values(
                    status=TaskStatus.COMPLETED.value,
                    queue_state=QueueState.SUCCEEDED.value,
                    result=result,
                    error_kind=None,
                    error_message=None,
                    completed_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                    **_stats_values(stats),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="succeeded",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details=asdict(stats),
            )
            session.commit()
            return True

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        error_kind: ErrorKind,
        error_message: str,
        stats: ExecutionStats | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a running task as permanently failed."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": TaskStatus.FAILED.value,
            "queue_state": QueueState.FAILED_FINAL.value,
            "result": None,
            "error_kind": error_kind.value,
            "error_message": error_message,
            "completed_at": now,
            "heartbeat_at": now,
            "updated_at": now,
        }
        if stats is not None:
            values.update(_stats_values(stats))
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(AgentTask)
                .where(*self._owned_running(task_id=task_id, worker_id=worker_id))
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.FAILED,
                details={
                    "error_kind": error_kind.value,
                    "error_message": error_message,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        run_after: datetime,
        delay_seconds: float,
        error_kind: ErrorKind,
        error_message: str,
        stats: ExecutionStats | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Hand a running task back to the queue; the public status stays ``processing``."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "queue_state": QueueState.RETRYING.value,
            "run_after": to_db_datetime(run_after),
            "worker_id": None,
            "heartbeat_at": None,
            "updated_at": now,
        }
        if stats is not None:
            values.update(_stats_values(stats))
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(AgentTask)
                .where(*self._owned_running(task_id=task_id, worker_id=worker_id))
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={
                    "delay_seconds": delay_seconds,
                    "run_after": to_utc_aware_datetime(to_db_datetime(run_after)).isoformat(),
                    "error_kind": error_kind.value,
                    "error_message": error_message,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def recover_stale_running_tasks(
        self,
        *,
        stale_after_seconds: int,
        now: datetime | None = None,
    ) -> int:
        """Re-queue running tasks whose worker stopped heart-beating.

        A task whose retries are already used up fails instead, and so does one
        with a pending cancel request, since claims never pick up flagged rows.
        """

        current_time = now or utc_now()
        threshold = to_db_datetime(current_time - timedelta(seconds=stale_after_seconds))
        db_now = to_db_datetime(current_time)
        recovered = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTask).where(
                    AgentTask.queue_state == QueueState.RUNNING.value,
                    col(AgentTask.heartbeat_at) < threshold,
                ),
            ).all()
            for row in rows:
                values: dict[str, Any] = {
                    "worker_id": None,
                    "heartbeat_at": None,
                    "updated_at": db_now,
                }
                error_kind: ErrorKind | None = None
                error_message = ""
                if row.cancel_requested_at is not None:
                    error_kind = ErrorKind.CANCELLED
                    error_message = "Task was cancelled."
                elif row.attempt_count > row.max_retries:
                    error_kind = ErrorKind.TRANSPORT
                    error_message = "Worker stopped responding and no retries are left."
                terminal = error_kind is not None
                if error_kind is not None:
                    values.update(
                        status=TaskStatus.FAILED.value,
                        queue_state=QueueState.FAILED_FINAL.value,
                        error_kind=error_kind.value,
                        error_message=error_message,
                        completed_at=db_now,
                    )
                else:
                    values.update(queue_state=QueueState.QUEUED.value, run_after=db_now)
                result = session.exec(
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == row.task_id,
                        col(AgentTask.queue_state) == QueueState.RUNNING.value,
                        col(AgentTask.heartbeat_at) < threshold,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="failed" if terminal else "stale_recovered",
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.FAILED if terminal else TaskStatus.PROCESSING,
                    details={
                        "previous_worker_id": row.worker_id,
                        "attempt": row.attempt_count,
                        **({"error_kind": error_kind.value} if error_kind is not None else {}),
                    },
                )
            session.commit()
        return recovered

    def request_cancel(self, *, task_id: str, user_id: str) -> TaskView:
        """Cancel a waiting task now, or flag a running one for its worker."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._owned_row(session, task_id=task_id, user_id=user_id)
            state = QueueState(row.queue_state)
            previous = TaskStatus(row.status)

            if state in CLAIMABLE_QUEUE_STATES:
                result = session.exec(
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == task_id,
                        col(AgentTask.queue_state) == state.value,
                    )
                    .values(
                        status=TaskStatus.FAILED.value,
                        queue_state=QueueState.FAILED_FINAL.value,
                        error_kind=ErrorKind.CANCELLED.value,
                        error_message="Task was cancelled.",
                        cancel_requested_at=now,
                        completed_at=now,
                        updated_at=now,
                    ),
                )
                status_to = TaskStatus.PROCESSING
            elif state is QueueState.RUNNING:
                result = session.exec(
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == task_id,
                        col(AgentTask.queue_state) == QueueState.RUNNING.value,
                        col(AgentTask.cancel_requested_at).is_(None),
                    )
                    .values(cancel_requested_at=now, updated_at=now),
                )
                status_to = previous
            else:
                raise RuntimeError(f"Task cannot be cancelled from status={row.status}")

            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancel_requested",
                status_from=previous,
                status_to=status_to,
                details={"queue_state": state.value},
            )
            if state in CLAIMABLE_QUEUE_STATES:
                # A waiting task still passes through processing on its way to failed.
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="failed",
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.FAILED,
                    details={
                        "error_kind": ErrorKind.CANCELLED.value,
                        "error_message": "Task was cancelled.",
                    },
                )
            session.commit()
            session.expire_all()
            return _to_task_view(self._owned_row(session, task_id=task_id, user_id=user_id))

    def is_cancel_requested(self, *, task_id: str) -> bool:
        with Session(self.engine) as session:
            value = session.exec(
                select(AgentTask.cancel_requested_at).where(AgentTask.task_id == task_id),
            ).one_or_none()
        return value is not None

    def append_tool_call(self, *, task_id: str, attempt: int, entry: ToolCallLogEntry) -> int:
        """Append one entry to the task's tool-call log and return its sequence number."""

        with Session(self.engine) as session:
            last_seq = session.exec(
                select(func.max(AgentTaskToolCall.seq)).where(AgentTaskToolCall.task_id == task_id),
            ).one()
            seq = (last_seq or 0) + 1
            session.add(
                AgentTaskToolCall(
                    task_id=task_id,
                    seq=seq,
                    attempt=attempt,
                    iteration=entry.iteration,
                    tool_name=entry.tool_name,
                    input_json=json.dumps(entry.input, ensure_ascii=False, default=str),
                    output=entry.output,
                    success=entry.success,
                    error=entry.error,
                    created_at=to_db_datetime(entry.timestamp),
                ),
            )
            session.commit()
        return seq

    def list_tool_calls(self, *, task_id: str) -> list[ToolCallView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTaskToolCall)
                .where(AgentTaskToolCall.task_id == task_id)
                .order_by(col(AgentTaskToolCall.seq).asc()),
            ).all()
        return [_to_tool_call_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by owner and status."""

        with Session(self.engine) as session:
            statement = select(AgentTask).order_by(col(AgentTask.created_at).desc()).limit(limit)
            if user_id is not None:
                statement = statement.where(AgentTask.user_id == user_id)
            if status is not None:
                statement = statement.where(AgentTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_events(self, *, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTaskEvent)
                .where(AgentTaskEvent.task_id == task_id)
                .order_by(col(AgentTaskEvent.id).asc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    def get_task_details(self, *, task_id: str, user_id: str) -> TaskDetails:
        """Return the task with its tool-call log and event stream."""

        task = self.get_task(task_id=task_id, user_id=user_id)
        return TaskDetails(
            task=task,
            tool_calls=self.list_tool_calls(task_id=task_id),
            events=self.list_events(task_id=task_id),
        )

    def _owned_row(self, session: Session, *, task_id: str, user_id: str) -> AgentTask:
        row = session.exec(
            select(AgentTask).where(AgentTask.task_id == task_id, AgentTask.user_id == user_id),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    @staticmethod
    def _owned_running(*, task_id: str, worker_id: str) -> Iterable[Any]:
        return (
            col(AgentTask.task_id) == task_id,
            col(AgentTask.queue_state) == QueueState.RUNNING.value,
            col(AgentTask.worker_id) == worker_id,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _stats_values(stats: ExecutionStats) -> dict[str, int]:
    return {
        "iterations": stats.iterations,
        "tools_used": stats.tools_used,
        "duration_ms": stats.duration_ms,
        "input_tokens": stats.input_tokens,
        "output_tokens": stats.output_tokens,
    }


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: AgentTask) -> TaskView:
    history = [
        ConversationMessage(
            role=str(item.get("role", "user")),
            content=str(item.get("content", "")),
        )
        for item in json.loads(row.conversation_history_json or "[]")
        if isinstance(item, dict)
    ]
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        description=row.description,
        status=TaskStatus(row.status),
        queue_state=QueueState(row.queue_state),
        result=row.result,
        error_kind=ErrorKind(row.error_kind) if row.error_kind is not None else None,
        error_message=row.error_message,
        attempt_count=row.attempt_count,
        max_retries=row.max_retries,
        timeout_seconds=row.timeout_seconds,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        heartbeat_at=_optional_datetime(row.heartbeat_at),
        cancel_requested_at=_optional_datetime(row.cancel_requested_at),
        conversation_history=history,
        stats=ExecutionStats(
            iterations=row.iterations,
            tools_used=row.tools_used,
            duration_ms=row.duration_ms,
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_tool_call_view(row: AgentTaskToolCall) -> ToolCallView:
    parsed = json.loads(row.input_json) if row.input_json else {}
    return ToolCallView(
        seq=row.seq,
        task_id=row.task_id,
        attempt=row.attempt,
        iteration=row.iteration,
        tool_name=row.tool_name,
        input=parsed if isinstance(parsed, dict) else {},
        success=row.success,
        output=row.output,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: AgentTaskEvent) -> TaskEventView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
