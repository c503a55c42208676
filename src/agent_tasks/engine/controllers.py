"""Controllers for agent task CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_tasks.config import Settings
from agent_tasks.engine.backend import AnthropicBackend, EchoBackend, LlmBackend
from agent_tasks.engine.executor import AgentExecutor
from agent_tasks.engine.models import ConversationMessage, TaskStatus
from agent_tasks.engine.repository import TaskRepository
from agent_tasks.engine.scheduler import (
    RetryPolicy,
    SchedulerRunSummary,
    TaskScheduler,
    WorkerPool,
)
from agent_tasks.engine.services import TaskService, to_status_view
from agent_tasks.questions.models import QuestionWrite
from agent_tasks.questions.repository import QuestionBankError, QuestionBankRepository
from agent_tasks.tools.registry import ToolRegistry, build_default_registry

SEED_CATEGORIES = (
    ("Python", "Language fundamentals and standard library."),
    ("Databases", "SQL, indexing and transactions."),
    ("System Design", "Architecture and scalability."),
)
SEED_QUALIFICATIONS = (
    ("Junior", "Entry-level positions."),
    ("Senior", "Experienced engineers."),
)
SEED_QUESTIONS = (
    (
        "What is the difference between a list and a tuple in Python?",
        "Lists are mutable, tuples are immutable and hashable when their items are.",
        ("python", "basics"),
        "Python",
        "Junior",
    ),
    (
        "Explain how a Python generator works.",
        "A generator function yields values lazily and keeps its frame between next() calls.",
        ("python", "iterators"),
        "Python",
        "Senior",
    ),
    (
        "What is a database index and when does it slow writes down?",
        "An index is an auxiliary structure for lookups; every insert or update maintains it.",
        ("sql", "performance"),
        "Databases",
        "Junior",
    ),
    (
        "Explain transaction isolation levels.",
        "Read uncommitted, read committed, repeatable read and serializable trade anomalies "
        "for concurrency.",
        ("sql", "transactions"),
        None,
        "Senior",
    ),
    (
        "How would you design a rate limiter?",
        None,
        ("design",),
        None,
        None,
    ),
)


@dataclass(slots=True)
class SubmitTaskCommand:
    """CLI input for task submission."""

    db_path: Path | None
    description: str
    history_path: Path | None = None
    timeout_seconds: float | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    workers: int | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    duration_seconds: float | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for inspect/cancel operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListQuestionsCommand:
    """CLI input for question listing."""

    db_path: Path | None
    search: str | None
    limit: int


class TaskCliController:
    """Coordinates submission, worker and inspection CLI operations."""

    def submit(self, command: SubmitTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        history = _load_history(command.history_path) if command.history_path else []
        with _task_repository(settings) as repository:
            service = TaskService(repository=repository, engine_settings=settings.engine)
            task = service.submit(
                user_id=settings.user_context.user_id,
                description=command.description,
                history=history,
                timeout_seconds=command.timeout_seconds,
                max_retries=command.max_retries,
            )
        return [
            f"Task submitted: task_id={task.task_id} status={task.status.value} "
            f"max_retries={task.max_retries} timeout={task.timeout_seconds:g}s",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_inference()
        workers = command.workers or settings.engine.worker_count
        backend = build_backend(settings)
        try:
            summary = self._run_workers(
                command,
                settings=settings,
                backend=backend,
                workers=workers,
            )
        finally:
            _close_backend(backend)
        return [_render_summary(summary)]

    def _run_workers(
        self,
        command: WorkerCommand,
        *,
        settings: Settings,
        backend: LlmBackend,
        workers: int,
    ) -> SchedulerRunSummary:
        with (
            _task_repository(settings) as repository,
            _question_repository(settings) as questions,
        ):
            executor = AgentExecutor(
                backend=backend,
                registry=build_default_registry(questions),
                max_iterations=settings.engine.max_iterations,
            )

            def scheduler_factory(worker_id: str) -> TaskScheduler:
                return _build_scheduler(
                    settings=settings,
                    repository=repository,
                    executor=executor,
                    worker_id=worker_id,
                )

            if command.once:
                summary = scheduler_factory("worker-1").run_once()
            elif workers == 1:
                summary = scheduler_factory("worker-1").run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                pool = WorkerPool(scheduler_factory=scheduler_factory, size=workers)
                summary = pool.run_until_stopped(duration_seconds=command.duration_seconds)
        return summary

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _task_repository(settings) as repository:
            tasks = repository.list_tasks(
                user_id=settings.user_context.user_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} queue={task.queue_state.value} "
                f"attempts={task.attempt_count}/{task.max_retries + 1} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _task_repository(settings) as repository:
            details = repository.get_task_details(
                task_id=command.task_id,
                user_id=settings.user_context.user_id,
            )

        task = details.task
        view = to_status_view(task)
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value} (queue: {task.queue_state.value})",
            f"Description: {task.description}",
            f"Attempts: {task.attempt_count}/{task.max_retries + 1}",
            f"Error: {view.error_kind or '-'} {task.error_message or ''}".rstrip(),
            f"Result: {task.result or '-'}",
            "Stats: " + " ".join(f"{key}={value}" for key, value in view.metadata.items()),
            f"Tool calls: {len(details.tool_calls)}",
        ]
        for call in details.tool_calls:
            outcome = "ok" if call.success else f"error={call.error}"
            lines.append(
                f"  #{call.seq} attempt={call.attempt} iteration={call.iteration} "
                f"{call.tool_name} {json.dumps(call.input, ensure_ascii=False)} {outcome}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _task_repository(settings) as repository:
            service = TaskService(repository=repository, engine_settings=settings.engine)
            task = service.cancel(task_id=command.task_id, user_id=settings.user_context.user_id)
        if task.is_terminal:
            return [f"Task canceled: {task.task_id}"]
        return [f"Cancellation requested: {task.task_id} (the worker stops at its next check)"]

    def list_tools(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _question_repository(settings, init_schema=False) as questions:
            registry: ToolRegistry = build_default_registry(questions)
            specs = registry.list_all()
        lines = [f"Tools: {len(specs)}"]
        for spec in specs:
            required = spec.input_schema.get("required", [])
            lines.append(
                f"  {spec.name} required=[{', '.join(required)}]: {spec.description}",
            )
        return lines

    def seed_questions(self, db_path: Path | None) -> list[str]:
        """Load a small demo question bank for the current user."""

        settings = Settings.from_env(db_path=db_path)
        user_id = settings.user_context.user_id
        created_categories = 0
        created_qualifications = 0
        with _question_repository(settings) as questions:
            categories = {item.name: item.id for item in questions.list_categories(user_id)}
            for name, description in SEED_CATEGORIES:
                if name not in categories:
                    categories[name] = questions.create_category(
                        user_id,
                        name,
                        description=description,
                    ).id
                    created_categories += 1
            qualifications = {
                item.name: item.id for item in questions.list_qualifications(user_id)
            }
            for name, description in SEED_QUALIFICATIONS:
                if name not in qualifications:
                    qualifications[name] = questions.create_qualification(
                        user_id,
                        name,
                        description=description,
                    ).id
                    created_qualifications += 1

            existing = {item.question_text for item in questions.list_questions(user_id)}
            created_questions = 0
            for text, answer, tags, category, qualification in SEED_QUESTIONS:
                if text in existing:
                    continue
                questions.create_question(
                    user_id,
                    QuestionWrite(
                        question_text=text,
                        answer=answer,
                        tags=list(tags),
                        category_id=categories[category] if category else None,
                        qualification_id=qualifications[qualification] if qualification else None,
                    ),
                )
                created_questions += 1
        return [
            f"Seeded question bank for user={user_id}: "
            f"categories={created_categories} qualifications={created_qualifications} "
            f"questions={created_questions}",
        ]

    def list_questions(self, command: ListQuestionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = settings.user_context.user_id
        with _question_repository(settings) as questions:
            if command.search:
                if len(command.search.strip()) < 2:
                    raise QuestionBankError("Search text must be at least 2 characters.")
                rows = questions.search_questions(user_id, command.search, limit=command.limit)
            else:
                rows = questions.list_questions(user_id, limit=command.limit)
        lines = [f"Questions: {len(rows)}"]
        for row in rows:
            lines.append(
                f"  #{row.id} [{row.category_name or 'uncategorized'}] "
                f"{row.question_text} tags={','.join(row.tags) or '-'}",
            )
        return lines


def build_backend(settings: Settings) -> LlmBackend:
    """Inference backend selected by ``AGENT_TASKS_LLM_BACKEND``."""

    llm = settings.llm
    if llm.backend == "echo":
        return EchoBackend()
    return AnthropicBackend(
        api_key=llm.api_key,
        model=llm.model,
        max_tokens=llm.max_tokens,
        temperature=llm.temperature,
        request_timeout_seconds=llm.request_timeout_seconds,
        base_url=llm.base_url,
    )


def _build_scheduler(
    *,
    settings: Settings,
    repository: TaskRepository,
    executor: AgentExecutor,
    worker_id: str,
) -> TaskScheduler:
    engine = settings.engine
    return TaskScheduler(
        repository=repository,
        executor=executor,
        worker_id=worker_id,
        retry_policy=RetryPolicy(
            max_retry_attempts=engine.max_retry_attempts,
            backoff_seconds=engine.retry_backoff_seconds,
        ),
        poll_interval_seconds=engine.poll_interval_seconds,
        stale_attempt_seconds=engine.stale_attempt_seconds,
        recover_stale_tasks=engine.recover_stale_tasks,
        cancel_probe_interval_seconds=engine.cancel_probe_interval_seconds,
    )


def _render_summary(summary: SchedulerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"timeouts={summary.timeouts} cancelled={summary.cancelled} "
        f"idle_polls={summary.idle_polls}"
    )


def _load_history(path: Path) -> list[ConversationMessage]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Conversation history is not valid JSON: {path}") from error
    if not isinstance(payload, list):
        raise ValueError("Conversation history must be a JSON list of {role, content} objects.")
    messages: list[ConversationMessage] = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            raise ValueError("Each history entry needs string 'role' and 'content' fields.")
        messages.append(ConversationMessage(role=str(item.get("role")), content=item["content"]))
    return messages


def _parse_status(raw_status: str | None) -> TaskStatus | None:
    if raw_status is None:
        return None
    try:
        return TaskStatus(raw_status.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {raw_status!r}") from error


def _close_backend(backend: LlmBackend) -> None:
    if isinstance(backend, AnthropicBackend):
        backend.close()


@contextmanager
def _task_repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _question_repository(
    settings: Settings,
    *,
    init_schema: bool = True,
) -> Iterator[QuestionBankRepository]:
    repository = QuestionBankRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    if init_schema:
        repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
