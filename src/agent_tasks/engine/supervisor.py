"""Wall-clock deadline and cooperative cancellation for one execution attempt."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum

from agent_tasks.engine.errors import AgentTaskError, TaskCancelledError, TaskTimeoutError

logger = logging.getLogger(__name__)


class CancelReason(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class CancellationSignal:
    """Thread-safe, set-once flag observed by the executor at every suspension point.

    The first ``cancel`` wins; later calls keep the original reason. When a
    deadline is attached, ``is_set`` also trips the signal once the deadline has
    passed, so a late timer thread cannot let an overrun attempt finish.
    """

    def __init__(self, *, timeout_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: CancelReason | None = None
        self.timeout_seconds = timeout_seconds
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self, reason: CancelReason) -> bool:
        """Trip the signal; return False when it was already tripped."""

        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
            self._event.set()
        logger.debug("Cancellation signal tripped: %s", reason.value)
        return True

    @property
    def is_set(self) -> bool:
        if not self._event.is_set() and self._deadline_passed():
            self.cancel(CancelReason.TIMEOUT)
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def remaining_seconds(self) -> float | None:
        """Seconds until the deadline, ``None`` without one, ``0.0`` once passed."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the signal trips."""

        remaining = self.remaining_seconds()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(max(0.0, seconds))
        return self.is_set

    def error(self) -> AgentTaskError:
        if self._reason is CancelReason.CANCELLED:
            return TaskCancelledError("Task was cancelled.")
        if self.timeout_seconds is not None:
            return TaskTimeoutError(f"Task exceeded timeout of {self.timeout_seconds:g} seconds.")
        return TaskTimeoutError("Task exceeded its timeout.")

    def raise_if_cancelled(self) -> None:
        if self.is_set:
            raise self.error()

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline


class TimeoutSupervisor:
    """Arm a deadline timer, an optional cancel-flag probe and an optional heartbeat.

    The heartbeat keeps beating until ``supervise`` exits, even after the signal
    has tripped: a tool that ignores cancellation still holds the task, and its
    worker must not look dead to stale recovery while it does.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float,
        cancel_probe: Callable[[], bool] | None = None,
        probe_interval_seconds: float = 1.0,
        heartbeat: Callable[[], bool] | None = None,
        heartbeat_interval_seconds: float = 1.0,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive.")
        if heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be positive.")
        self.timeout_seconds = timeout_seconds
        self.cancel_probe = cancel_probe
        self.probe_interval_seconds = probe_interval_seconds
        self.heartbeat = heartbeat
        self.heartbeat_interval_seconds = heartbeat_interval_seconds

    @contextmanager
    def supervise(self) -> Iterator[CancellationSignal]:
        signal = CancellationSignal(timeout_seconds=self.timeout_seconds)
        timer = threading.Timer(self.timeout_seconds, signal.cancel, args=(CancelReason.TIMEOUT,))
        timer.daemon = True
        timer.start()

        stop_probe = threading.Event()
        probe_thread: threading.Thread | None = None
        if self.cancel_probe is not None:
            probe_thread = threading.Thread(
                target=self._probe_loop,
                args=(self.cancel_probe, signal, stop_probe),
                name="cancel-probe",
                daemon=True,
            )
            probe_thread.start()
        heartbeat_thread: threading.Thread | None = None
        if self.heartbeat is not None:
            heartbeat_thread = threading.Thread(
                target=self._heartbeat_loop,
                args=(self.heartbeat, stop_probe),
                name="attempt-heartbeat",
                daemon=True,
            )
            heartbeat_thread.start()

        try:
            yield signal
        finally:
            timer.cancel()
            stop_probe.set()
            if probe_thread is not None:
                probe_thread.join(timeout=max(1.0, self.probe_interval_seconds * 2))
            if heartbeat_thread is not None:
                heartbeat_thread.join(timeout=max(1.0, self.heartbeat_interval_seconds * 2))

    def _heartbeat_loop(self, heartbeat: Callable[[], bool], stop: threading.Event) -> None:
        while not stop.wait(self.heartbeat_interval_seconds):
            try:
                alive = heartbeat()
            except Exception:  # noqa: BLE001
                logger.warning("Heartbeat failed; will retry", exc_info=True)
                continue
            if not alive:
                logger.warning("Heartbeat found the attempt no longer owned by this worker")
                return

    def _probe_loop(
        self,
        probe: Callable[[], bool],
        signal: CancellationSignal,
        stop: threading.Event,
    ) -> None:
        while not stop.wait(self.probe_interval_seconds):
            if signal.is_set:
                return
            try:
                requested = probe()
            except Exception:  # noqa: BLE001
                logger.warning("Cancel probe failed; will retry", exc_info=True)
                continue
            if requested:
                signal.cancel(CancelReason.CANCELLED)
                return
