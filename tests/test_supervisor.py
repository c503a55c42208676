from __future__ import annotations

import threading
import time

import allure
import pytest

from agent_tasks.engine.errors import TaskCancelledError, TaskTimeoutError
from agent_tasks.engine.supervisor import CancellationSignal, CancelReason, TimeoutSupervisor

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Timeout Supervisor"),
]


def test_first_cancel_reason_wins() -> None:
    signal = CancellationSignal()

    assert signal.is_set is False
    assert signal.cancel(CancelReason.CANCELLED) is True
    assert signal.cancel(CancelReason.TIMEOUT) is False

    assert signal.is_set is True
    assert signal.reason is CancelReason.CANCELLED
    with pytest.raises(TaskCancelledError):
        signal.raise_if_cancelled()


def test_passed_deadline_trips_signal_without_timer() -> None:
    signal = CancellationSignal(timeout_seconds=0.01)
    time.sleep(0.05)

    assert signal.remaining_seconds() == 0.0
    assert signal.is_set is True
    assert signal.reason is CancelReason.TIMEOUT
    with pytest.raises(TaskTimeoutError, match="0.01 seconds"):
        signal.raise_if_cancelled()


def test_signal_without_deadline_reports_no_remaining_time() -> None:
    signal = CancellationSignal()

    assert signal.remaining_seconds() is None
    assert signal.wait(0.01) is False


def test_wait_returns_as_soon_as_signal_trips() -> None:
    signal = CancellationSignal()
    threading.Timer(0.05, signal.cancel, args=(CancelReason.CANCELLED,)).start()

    started = time.monotonic()
    assert signal.wait(5.0) is True
    assert time.monotonic() - started < 2.0


def test_supervisor_fires_timeout() -> None:
    supervisor = TimeoutSupervisor(timeout_seconds=0.1)

    with supervisor.supervise() as signal:
        assert signal.wait(5.0) is True

    assert signal.reason is CancelReason.TIMEOUT
    assert isinstance(signal.error(), TaskTimeoutError)


def test_supervisor_probe_requests_cancellation() -> None:
    calls: list[int] = []

    def probe() -> bool:
        calls.append(1)
        return len(calls) >= 2

    supervisor = TimeoutSupervisor(
        timeout_seconds=10,
        cancel_probe=probe,
        probe_interval_seconds=0.02,
    )

    with supervisor.supervise() as signal:
        assert signal.wait(5.0) is True

    assert signal.reason is CancelReason.CANCELLED
    assert len(calls) == 2


def test_supervisor_survives_failing_probe() -> None:
    def probe() -> bool:
        raise RuntimeError("database is locked")

    supervisor = TimeoutSupervisor(
        timeout_seconds=0.2,
        cancel_probe=probe,
        probe_interval_seconds=0.02,
    )

    with supervisor.supervise() as signal:
        signal.wait(5.0)

    assert signal.reason is CancelReason.TIMEOUT


def test_supervisor_does_not_fire_after_exit() -> None:
    supervisor = TimeoutSupervisor(timeout_seconds=0.1)

    with supervisor.supervise() as signal:
        pass
    time.sleep(0.15)

    assert signal.reason is None


def test_supervisor_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="positive"):
        TimeoutSupervisor(timeout_seconds=0)
    with pytest.raises(ValueError, match="heartbeat_interval_seconds"):
        TimeoutSupervisor(timeout_seconds=1, heartbeat_interval_seconds=0)


def test_heartbeat_outlives_tripped_signal_until_exit() -> None:
    beats: list[float] = []

    def heartbeat() -> bool:
        beats.append(time.monotonic())
        return True

    supervisor = TimeoutSupervisor(
        timeout_seconds=0.05,
        heartbeat=heartbeat,
        heartbeat_interval_seconds=0.02,
    )

    with supervisor.supervise() as signal:
        assert signal.wait(5.0) is True
        tripped_at = time.monotonic()
        time.sleep(0.2)
    exited = len(beats)
    time.sleep(0.1)

    assert any(beat > tripped_at for beat in beats)
    assert len(beats) == exited


def test_heartbeat_stops_once_ownership_is_lost() -> None:
    calls: list[int] = []

    def heartbeat() -> bool:
        calls.append(1)
        return False

    supervisor = TimeoutSupervisor(
        timeout_seconds=5,
        heartbeat=heartbeat,
        heartbeat_interval_seconds=0.02,
    )

    with supervisor.supervise():
        time.sleep(0.2)

    assert calls == [1]
