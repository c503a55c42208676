from __future__ import annotations

import threading
import time

import allure
import pytest
from pydantic import BaseModel

from agent_tasks.engine.backend.base import InferenceRequest, ModelTurn
from agent_tasks.engine.backend.scripted import (
    EchoBackend,
    ScriptedBackend,
    final_answer,
    tool_call,
)
from agent_tasks.engine.errors import BackendRequestError, TransportError
from agent_tasks.engine.executor import AgentExecutor
from agent_tasks.engine.models import ErrorKind, QueueState, TaskCreate, TaskStatus
from agent_tasks.engine.repository import TaskRepository
from agent_tasks.engine.scheduler import (
    RetryPolicy,
    SchedulerRunSummary,
    TaskScheduler,
    WorkerPool,
)
from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.tools.base import FunctionTool
from agent_tasks.tools.registry import ToolRegistry

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Scheduler and Retry Policy"),
]


class _EmptyInput(BaseModel):
    pass


def _scheduler(
    repository: TaskRepository,
    registry: ToolRegistry,
    backend,
    clock,
    *,
    worker_id: str = "worker-1",
) -> TaskScheduler:
    return TaskScheduler(
        repository=repository,
        executor=AgentExecutor(backend=backend, registry=registry),
        worker_id=worker_id,
        retry_policy=RetryPolicy(max_retry_attempts=3, backoff_seconds=(5, 15, 30)),
        poll_interval_seconds=0.01,
        cancel_probe_interval_seconds=0.02,
        clock=clock,
    )


def _submit(repository: TaskRepository, clock, **overrides) -> str:
    task = repository.create_task(
        TaskCreate(
            user_id="alice",
            description="Categorize uncategorized questions.",
            run_after=clock(),
            **overrides,
        ),
    )
    return task.task_id


def _register_slow_tool(registry: ToolRegistry) -> None:
    def wait_for_signal(_: BaseModel, __: str, signal: CancellationSignal) -> dict[str, bool]:
        signal.wait(5.0)
        return {"finished": True}

    registry.register(
        FunctionTool(
            name="slow_reindex",
            description="Rebuild the search index.",
            input_model=_EmptyInput,
            handler=wait_for_signal,
        ),
    )


def test_retry_policy_delays_and_budget() -> None:
    policy = RetryPolicy(max_retry_attempts=3, backoff_seconds=(5, 15, 30))

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [5, 15, 30, 30]
    assert policy.allows_retry(attempt_count=3) is True
    assert policy.allows_retry(attempt_count=4) is False
    assert policy.allows_retry(attempt_count=1, max_retries=0) is False
    assert RetryPolicy(backoff_seconds=()).delay_for(1) == 0.0


def test_two_transient_failures_then_success(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    backend = ScriptedBackend(
        [
            TransportError("Inference service returned HTTP 503: overloaded"),
            TransportError("Inference service returned HTTP 529: overloaded"),
            final_answer("Categorized 4 questions."),
        ],
    )
    scheduler = _scheduler(task_repository, registry, backend, clock)
    task_id = _submit(task_repository, clock)

    first = scheduler.run_once()
    assert (first.processed, first.retried) == (1, 1)
    assert scheduler.run_once().idle_polls == 1

    clock.advance(5)
    assert scheduler.run_once().retried == 1
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.PROCESSING
    assert task.queue_state == QueueState.RETRYING

    clock.advance(15)
    final = scheduler.run_once()
    assert final.succeeded == 1

    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.COMPLETED
    assert task.attempt_count == 3
    assert task.result == "Categorized 4 questions."
    assert task.error_kind is None


def test_exhausted_retries_observe_backoff_in_order(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    backend = ScriptedBackend(
        [TransportError("Inference service returned HTTP 502: bad gateway")],
        repeat_last=True,
    )
    scheduler = _scheduler(task_repository, registry, backend, clock)
    task_id = _submit(task_repository, clock)

    for delay in (5, 15, 30):
        assert scheduler.run_once().retried == 1
        clock.advance(delay - 1)
        assert scheduler.run_once().idle_polls == 1
        clock.advance(1)
    last = scheduler.run_once()

    assert last.failed == 1
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.FAILED
    assert task.queue_state == QueueState.FAILED_FINAL
    assert task.error_kind == ErrorKind.TRANSPORT
    assert task.error_message == "Inference service returned HTTP 502: bad gateway"
    assert task.attempt_count == 4
    events = task_repository.list_events(task_id=task_id)
    delays = [
        event.details["delay_seconds"] for event in events if event.event_type == "retry_scheduled"
    ]
    assert delays == [5, 15, 30]
    statuses = [event.status_to for event in events if event.status_to is not None]
    assert statuses[0] == TaskStatus.PENDING
    assert statuses[-1] == TaskStatus.FAILED
    assert set(statuses[1:-1]) == {TaskStatus.PROCESSING}


def test_non_transient_failure_is_not_retried(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    backend = ScriptedBackend(
        [BackendRequestError("Inference service returned HTTP 400: bad request", status_code=400)],
    )
    scheduler = _scheduler(task_repository, registry, backend, clock)
    task_id = _submit(task_repository, clock)

    summary = scheduler.run_once()

    assert (summary.failed, summary.retried) == (1, 0)
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.FAILED
    assert task.attempt_count == 1
    assert task.error_kind == ErrorKind.TRANSPORT
    failed_event = task_repository.list_events(task_id=task_id)[-1]
    assert failed_event.event_type == "failed"
    assert failed_event.details["matched_rule"] == "request_rejected"


def test_iteration_cap_fails_task_with_full_log(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    backend = ScriptedBackend([tool_call("get_categories")], repeat_last=True)
    scheduler = _scheduler(task_repository, registry, backend, clock)
    task_id = _submit(task_repository, clock)

    assert scheduler.run_once().failed == 1

    details = task_repository.get_task_details(task_id=task_id, user_id="alice")
    assert details.task.status == TaskStatus.FAILED
    assert details.task.error_kind == ErrorKind.MAX_ITERATIONS
    assert len(details.tool_calls) == 20
    assert details.task.stats.iterations == 20
    assert details.task.stats.tools_used == 20


def test_timeout_fails_task_and_keeps_tool_log(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    _register_slow_tool(registry)
    backend = ScriptedBackend([tool_call("slow_reindex"), final_answer("Reindexed.")])
    scheduler = _scheduler(task_repository, registry, backend, clock)
    task_id = _submit(task_repository, clock, timeout_seconds=0.2)

    summary = scheduler.run_once()

    assert (summary.failed, summary.timeouts, summary.retried) == (1, 1, 0)
    details = task_repository.get_task_details(task_id=task_id, user_id="alice")
    assert details.task.status == TaskStatus.FAILED
    assert details.task.error_kind == ErrorKind.TIMEOUT
    assert details.task.result is None
    assert [call.tool_name for call in details.tool_calls] == ["slow_reindex"]
    assert backend.calls == 1


def test_cancel_request_stops_running_task(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    _register_slow_tool(registry)
    task_id = _submit(task_repository, clock)

    def cancel_then_call_slow_tool(_: InferenceRequest) -> ModelTurn:
        task_repository.request_cancel(task_id=task_id, user_id="alice")
        return tool_call("slow_reindex")

    backend = ScriptedBackend([cancel_then_call_slow_tool, final_answer("Done.")])
    scheduler = _scheduler(task_repository, registry, backend, clock)

    summary = scheduler.run_once()

    assert (summary.failed, summary.cancelled) == (1, 1)
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.FAILED
    assert task.error_kind == ErrorKind.CANCELLED


def test_transient_failure_after_cancel_request_is_not_retried(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    task_id = _submit(task_repository, clock)

    def cancel_then_fail(_: InferenceRequest) -> ModelTurn:
        task_repository.request_cancel(task_id=task_id, user_id="alice")
        raise TransportError("connection reset")

    scheduler = _scheduler(task_repository, registry, ScriptedBackend([cancel_then_fail]), clock)

    summary = scheduler.run_once()

    assert (summary.retried, summary.cancelled) == (0, 1)
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.error_kind == ErrorKind.CANCELLED


def test_run_loop_stops_when_idle_or_capped(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    for _ in range(3):
        _submit(task_repository, clock)
    scheduler = _scheduler(task_repository, registry, EchoBackend(), clock)

    capped = scheduler.run_loop(max_tasks=2)
    assert capped.processed == 2
    rest = scheduler.run_loop(max_idle_polls=2)
    assert (rest.processed, rest.succeeded, rest.idle_polls) == (1, 1, 2)

    completed = task_repository.list_tasks(user_id="alice", status=TaskStatus.COMPLETED)
    assert len(completed) == 3
    assert all(task.result == "echo: Categorize uncategorized questions." for task in completed)


def test_request_stop_prevents_new_claims(
    task_repository: TaskRepository,
    registry: ToolRegistry,
    clock,
) -> None:
    _submit(task_repository, clock)
    scheduler = _scheduler(task_repository, registry, EchoBackend(), clock)

    scheduler.request_stop()

    assert scheduler.run_loop().processed == 0
    assert scheduler.run_once().idle_polls == 1


def test_worker_pool_processes_each_task_once(
    task_repository: TaskRepository,
    registry: ToolRegistry,
) -> None:
    task_ids = [
        task_repository.create_task(
            TaskCreate(user_id="alice", description=f"Task {index}"),
        ).task_id
        for index in range(6)
    ]
    executor = AgentExecutor(backend=EchoBackend(), registry=registry)
    pool = WorkerPool(
        scheduler_factory=lambda worker_id: TaskScheduler(
            repository=task_repository,
            executor=executor,
            worker_id=worker_id,
            poll_interval_seconds=0.01,
        ),
        size=3,
    )

    pool.start()
    deadline = time.monotonic() + 15
    try:
        while time.monotonic() < deadline:
            done = task_repository.list_tasks(user_id="alice", status=TaskStatus.COMPLETED)
            if len(done) == len(task_ids):
                break
            time.sleep(0.05)
    finally:
        pool.stop()
        pool.join(timeout=5)

    assert pool.summary.succeeded == len(task_ids)
    for task_id in task_ids:
        events = task_repository.list_events(task_id=task_id)
        assert [event.event_type for event in events].count("claimed") == 1
        assert task_repository.get_task(task_id=task_id, user_id="alice").attempt_count == 1


def test_worker_pool_rejects_empty_size(task_repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="size"):
        WorkerPool(scheduler_factory=lambda _: None, size=0)  # type: ignore[arg-type,return-value]


def test_long_tool_call_keeps_ownership_against_stale_recovery(
    task_repository: TaskRepository,
    registry: ToolRegistry,
) -> None:
    active: list[str] = []
    overlaps: list[int] = []
    lock = threading.Lock()

    def blocking_scan(_: BaseModel, __: str, ___: CancellationSignal) -> dict[str, bool]:
        with lock:
            active.append("scan")
            overlaps.append(len(active))
        time.sleep(2.0)
        with lock:
            active.remove("scan")
        return {"scanned": True}

    registry.register(
        FunctionTool(
            name="blocking_scan",
            description="Scan every question for duplicates.",
            input_model=_EmptyInput,
            handler=blocking_scan,
        ),
    )
    task_id = task_repository.create_task(
        TaskCreate(user_id="alice", description="Find duplicates.", timeout_seconds=30),
    ).task_id

    def _worker(worker_id: str, backend) -> TaskScheduler:
        return TaskScheduler(
            repository=task_repository,
            executor=AgentExecutor(backend=backend, registry=registry),
            worker_id=worker_id,
            poll_interval_seconds=0.01,
            stale_attempt_seconds=1,
            cancel_probe_interval_seconds=0.05,
        )

    first = _worker(
        "worker-1",
        ScriptedBackend([tool_call("blocking_scan"), final_answer("No duplicates.")]),
    )
    second = _worker(
        "worker-2",
        ScriptedBackend([tool_call("blocking_scan"), final_answer("No duplicates.")]),
    )
    results: list[SchedulerRunSummary] = []
    runner = threading.Thread(target=lambda: results.append(first.run_once()), daemon=True)
    runner.start()
    time.sleep(1.5)

    competing = second.run_once()
    runner.join(timeout=10)

    assert runner.is_alive() is False
    assert competing.processed == 0
    assert results[0].succeeded == 1
    assert overlaps == [1]
    task = task_repository.get_task(task_id=task_id, user_id="alice")
    assert task.status == TaskStatus.COMPLETED
    assert task.attempt_count == 1
    events = [event.event_type for event in task_repository.list_events(task_id=task_id)]
    assert "stale_recovered" not in events
