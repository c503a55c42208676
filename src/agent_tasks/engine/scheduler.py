"""Queue workers that claim agent tasks and run them under supervision."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from agent_tasks.engine.errors import TaskCancelledError
from agent_tasks.engine.executor import AgentExecutor
from agent_tasks.engine.failure_classifier import FailureClassification, classify_failure
from agent_tasks.engine.models import ErrorKind, ExecutionStats, TaskView, ToolCallLogEntry
from agent_tasks.engine.repository import TaskRepository
from agent_tasks.engine.supervisor import TimeoutSupervisor
from agent_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    cancelled: int = 0
    idle_polls: int = 0

    def add(self, other: SchedulerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and backoff for transient failures.

    ``max_retry_attempts`` counts re-executions after the first attempt, so a
    task runs at most ``max_retry_attempts + 1`` times. The n-th retry waits
    ``backoff_seconds[n - 1]``; the last delay repeats when the list is short.
    """

    max_retry_attempts: int = 3
    backoff_seconds: Sequence[float] = (5.0, 15.0, 30.0)

    def allows_retry(self, *, attempt_count: int, max_retries: int | None = None) -> bool:
        budget = self.max_retry_attempts if max_retries is None else max_retries
        return attempt_count <= budget

    def delay_for(self, retry_number: int) -> float:
        if not self.backoff_seconds:
            return 0.0
        index = min(max(retry_number, 1), len(self.backoff_seconds)) - 1
        return float(self.backoff_seconds[index])


class TaskScheduler:
    """Claims ready tasks and executes them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        executor: AgentExecutor,
        worker_id: str,
        retry_policy: RetryPolicy | None = None,
        poll_interval_seconds: float = 1.0,
        stale_attempt_seconds: int = 600,
        recover_stale_tasks: bool = True,
        cancel_probe_interval_seconds: float = 1.0,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_attempt_seconds = stale_attempt_seconds
        self.recover_stale_tasks = recover_stale_tasks
        self.cancel_probe_interval_seconds = cancel_probe_interval_seconds
        self.clock = clock
        self._stop_requested = threading.Event()
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def heartbeat_interval_seconds(self) -> float:
        """Beat often enough that a live attempt never crosses the stale threshold."""

        if self.stale_attempt_seconds <= 0:
            return self.cancel_probe_interval_seconds
        return min(self.cancel_probe_interval_seconds, self.stale_attempt_seconds / 3)

    def request_stop(self, *, signal_name: str = "request") -> None:
        """Finish the current task, then stop claiming new ones."""

        self._stop_signal_name = signal_name
        self._stop_requested.set()

    def run_once(self) -> SchedulerRunSummary:
        """Process at most one task from the queue."""

        summary = SchedulerRunSummary()
        task = self._claim_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.process_task(task, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> SchedulerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = SchedulerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def process_task(self, task: TaskView, *, summary: SchedulerRunSummary) -> None:
        """Execute one claimed attempt and persist its outcome."""

        logger.info(
            "Worker %s running task %s (attempt %d)",
            self.worker_id,
            task.task_id,
            task.attempt_count,
        )
        stats = ExecutionStats()
        supervisor = TimeoutSupervisor(
            timeout_seconds=task.timeout_seconds,
            cancel_probe=lambda: self.repository.is_cancel_requested(task_id=task.task_id),
            probe_interval_seconds=self.cancel_probe_interval_seconds,
            heartbeat=lambda: self.repository.touch_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
            ),
            heartbeat_interval_seconds=self.heartbeat_interval_seconds,
        )

        def record_tool_call(entry: ToolCallLogEntry) -> None:
            self.repository.append_tool_call(
                task_id=task.task_id,
                attempt=task.attempt_count,
                entry=entry,
            )

        def heartbeat(_: int) -> None:
            self.repository.touch_task(task_id=task.task_id, worker_id=self.worker_id)

        try:
            with supervisor.supervise() as cancel_signal:
                result = self.executor.run(
                    description=task.description,
                    user_id=task.user_id,
                    signal=cancel_signal,
                    history=task.conversation_history,
                    stats=stats,
                    on_tool_call=record_tool_call,
                    on_iteration=heartbeat,
                )
        except Exception as error:  # noqa: BLE001
            classification = classify_failure(error)
            if classification.kind is ErrorKind.INTERNAL:
                logger.exception("Task %s failed with an unexpected error", task.task_id)
            else:
                logger.warning(
                    "Task %s attempt %d failed: %s (%s)",
                    task.task_id,
                    task.attempt_count,
                    classification.message,
                    classification.kind.value,
                )
            outcome = self._handle_retry_or_fail(
                task=task,
                classification=classification,
                stats=stats,
            )
            if outcome.retried:
                summary.retried += 1
            if outcome.failed:
                summary.failed += 1
                if classification.kind is ErrorKind.TIMEOUT:
                    summary.timeouts += 1
                elif classification.kind is ErrorKind.CANCELLED:
                    summary.cancelled += 1
            return

        if self.repository.complete_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            result=result.answer,
            stats=stats,
        ):
            summary.succeeded += 1
            logger.info("Task %s completed", task.task_id)
        else:
            logger.warning("Task %s lost ownership before completion", task.task_id)

    def _claim_task(self) -> TaskView | None:
        if self.stop_requested:
            return None
        self._recover_stale_attempts()
        return self.repository.claim_next_ready_task(worker_id=self.worker_id, now=self.clock())

    def _recover_stale_attempts(self) -> None:
        if not self.recover_stale_tasks or self.stale_attempt_seconds <= 0:
            return
        recovered = self.repository.recover_stale_running_tasks(
            stale_after_seconds=self.stale_attempt_seconds,
            now=self.clock(),
        )
        if recovered:
            logger.warning("Recovered %d stale running task(s)", recovered)

    def _handle_retry_or_fail(
        self,
        *,
        task: TaskView,
        classification: FailureClassification,
        stats: ExecutionStats,
    ) -> RetryOutcome:
        if classification.transient and self.repository.is_cancel_requested(task_id=task.task_id):
            classification = classify_failure(TaskCancelledError("Task was cancelled."))

        if classification.transient and self.retry_policy.allows_retry(
            attempt_count=task.attempt_count,
            max_retries=task.max_retries,
        ):
            delay_seconds = self.retry_policy.delay_for(task.attempt_count)
            retried = self.repository.schedule_retry(
                task_id=task.task_id,
                worker_id=self.worker_id,
                run_after=self.clock() + timedelta(seconds=delay_seconds),
                delay_seconds=delay_seconds,
                error_kind=classification.kind,
                error_message=classification.message,
                stats=stats,
                details=classification.to_event_details(),
            )
            if retried:
                logger.info(
                    "Task %s scheduled for retry %d in %.1fs",
                    task.task_id,
                    task.attempt_count,
                    delay_seconds,
                )
            return RetryOutcome(retried=retried, failed=False)

        failed = self.repository.fail_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            error_kind=classification.kind,
            error_message=classification.message,
            stats=stats,
            details=classification.to_event_details(),
        )
        return RetryOutcome(retried=False, failed=failed)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_requested.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        with _stop_on_signals(lambda name: self.request_stop(signal_name=name)):
            yield


class WorkerPool:
    """Run ``size`` schedulers in threads against the shared task store."""

    def __init__(
        self,
        *,
        scheduler_factory: Callable[[str], TaskScheduler],
        size: int,
        worker_prefix: str = "worker",
        error_backoff_seconds: float = 5.0,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be >= 1.")
        self.schedulers = [
            scheduler_factory(f"{worker_prefix}-{index + 1}") for index in range(size)
        ]
        self.error_backoff_seconds = error_backoff_seconds
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.summary = SchedulerRunSummary()

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool is already running.")
        for scheduler in self.schedulers:
            thread = threading.Thread(
                target=self._worker_loop,
                args=(scheduler,),
                name=scheduler.worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started with %d worker(s)", len(self._threads))

    def stop(self, *, signal_name: str = "request") -> None:
        self._stop.set()
        for scheduler in self.schedulers:
            scheduler.request_stop(signal_name=signal_name)

    def join(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        logger.info("Worker pool stopped")

    def run_until_stopped(self, *, duration_seconds: float | None = None) -> SchedulerRunSummary:
        """Block until SIGINT/SIGTERM (or ``duration_seconds``), then drain workers."""

        with _stop_on_signals(lambda name: self.stop(signal_name=name)):
            self.start()
            self._stop.wait(duration_seconds)
            self.stop()
            self.join()
        return self.summary

    def _worker_loop(self, scheduler: TaskScheduler) -> None:
        while not self._stop.is_set():
            try:
                summary = scheduler.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s error", scheduler.worker_id)
                self._stop.wait(self.error_backoff_seconds)
                continue
            with self._lock:
                self.summary.add(summary)
            if summary.processed == 0:
                self._stop.wait(scheduler.poll_interval_seconds)


@contextmanager
def _stop_on_signals(on_signal: Callable[[str], None]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
