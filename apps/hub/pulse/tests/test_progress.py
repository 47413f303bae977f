"""Tests for progress streaming of tracked tasks."""
from __future__ import annotations

import threading

import pytest

from apps.hub.pulse.core.dispatcher import Dispatcher
from apps.hub.pulse.core.errors import QueueSaturated, TaskFailed
from apps.hub.pulse.core.executor import OverflowPolicy, TaskExecutor
from apps.hub.pulse.core.progress import ProgressPublisher, ProgressReporter
from apps.hub.pulse.core.registry import ConnectionRegistry, ConnectionState
from apps.hub.pulse.core.tasks import TaskStatus
from apps.hub.pulse.tests.transport_doubles import BrokenChannel, RecordingChannel, drain


def _steps(reporter: ProgressReporter) -> str:
    for _ in range(reporter.total):
        reporter.advance()
    return "all done"


def test_five_step_task_streams_full_sequence(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    handle = registry.register("c2")

    task = publisher.track_progress(_steps, "c2", total_steps=5)
    assert executor.wait(task, timeout=2) == "all done"

    events = drain(handle)
    assert [e.name for e in events] == ["started"] + ["progress"] * 5 + ["complete"]
    assert events[0].payload["totalSteps"] == 5
    assert [(e.payload["step"], e.payload["total"]) for e in events[1:-1]] == [
        (i, 5) for i in range(1, 6)
    ]
    assert [e.payload["percent"] for e in events[1:-1]] == [20, 40, 60, 80, 100]
    assert events[-1].payload == {"taskId": task.id, "result": "all done"}
    assert all(e.payload["taskId"] == task.id for e in events)
    assert registry.get("c2") is None
    assert handle.state is ConnectionState.CLOSED


def test_publisher_opens_connection_when_missing(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    gate = threading.Event()

    def work(reporter: ProgressReporter) -> None:
        gate.wait(2)
        reporter.advance()

    task = publisher.track_progress(work, "fresh", total_steps=1)
    handle = registry.lookup("fresh")
    gate.set()
    executor.wait(task, timeout=2)
    assert [e.name for e in drain(handle)] == ["started", "progress", "complete"]


def test_percent_is_non_decreasing_for_uneven_totals(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    handle = registry.register("c", channel=RecordingChannel(capacity=64))
    task = publisher.track_progress(_steps, "c", total_steps=7)
    executor.wait(task, timeout=2)

    progress = [e.payload for e in handle.channel.written if e.name == "progress"]
    steps = [p["step"] for p in progress]
    percents = [p["percent"] for p in progress]
    assert steps == sorted(set(steps))
    assert percents == sorted(percents)
    assert percents[-1] == 100


def test_out_of_order_steps_are_ignored(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    handle = registry.register("c")

    def jumpy(reporter: ProgressReporter) -> list[bool]:
        return [
            reporter.step(2),
            reporter.step(1),
            reporter.step(2),
            reporter.step(4),
            reporter.step(9),
        ]

    task = publisher.track_progress(jumpy, "c", total_steps=4)
    assert executor.wait(task, timeout=2) == [True, False, False, True, False]
    steps = [e.payload["step"] for e in drain(handle) if e.name == "progress"]
    assert steps == [2, 4]
    assert executor.status(task).percent == 100


def test_failing_task_ends_with_error_event(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    handle = registry.register("c")

    def explode(reporter: ProgressReporter) -> None:
        reporter.advance()
        raise RuntimeError("disk on fire")

    task = publisher.track_progress(explode, "c", total_steps=3)
    with pytest.raises(TaskFailed):
        executor.wait(task, timeout=2)

    events = drain(handle)
    assert [e.name for e in events] == ["started", "progress", "error"]
    assert events[-1].payload["message"] == "disk on fire"
    assert registry.get("c") is None
    assert executor.status(task).status is TaskStatus.FAILED


def test_lost_subscriber_does_not_stop_task(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    registry.register("gone", channel=BrokenChannel())
    calls: list[int] = []

    def work(reporter: ProgressReporter) -> int:
        for _ in range(reporter.total):
            reporter.advance()
            calls.append(reporter.current)
        return len(calls)

    task = publisher.track_progress(work, "gone", total_steps=4)

    assert executor.wait(task, timeout=2) == 4
    assert calls == [1, 2, 3, 4]
    assert registry.get("gone") is None
    snapshot = executor.status(task)
    assert snapshot.status is TaskStatus.SUCCEEDED
    assert snapshot.step == 4


def test_stops_emitting_after_first_failed_send(registry: ConnectionRegistry) -> None:
    class FlakyChannel(RecordingChannel):
        """Accepts the first two events, then the transport dies."""

        def put(self, event, timeout=None):
            if len(self.written) >= 2:
                raise ConnectionResetError("reset by peer")
            super().put(event, timeout)

    channel = FlakyChannel()
    registry.register("flaky", channel=channel)
    pool = TaskExecutor(core_size=1, max_size=1, queue_capacity=1)
    try:
        publisher = ProgressPublisher(pool, registry, Dispatcher(registry, send_timeout=0.01))
        task = publisher.track_progress(_steps, "flaky", total_steps=5)
        assert pool.wait(task, timeout=2) == "all done"
    finally:
        pool.shutdown(wait=True, timeout=2)

    assert channel.names == ["started", "progress"]
    assert "flaky" not in registry


def test_rejected_submission_reports_error_and_closes(
    registry: ConnectionRegistry, dispatcher: Dispatcher
) -> None:
    pool = TaskExecutor(core_size=1, max_size=1, queue_capacity=0, overflow=OverflowPolicy.REJECT)
    gate = threading.Event()
    try:
        pool.submit(lambda: gate.wait(5))
        publisher = ProgressPublisher(pool, registry, dispatcher)
        handle = registry.register("late")

        with pytest.raises(QueueSaturated):
            publisher.track_progress(_steps, "late", total_steps=2)

        assert [e.name for e in drain(handle)] == ["started", "error"]
        assert "late" not in registry
    finally:
        gate.set()
        pool.shutdown(wait=True, timeout=2)


def test_cancelled_progress_task_ends_with_error(
    registry: ConnectionRegistry, executor: TaskExecutor, publisher: ProgressPublisher
) -> None:
    handle = registry.register("c")
    first_step = threading.Event()

    def work(reporter: ProgressReporter) -> None:
        reporter.advance()
        first_step.set()
        while True:
            reporter.raise_if_cancelled()
            threading.Event().wait(0.005)

    task = publisher.track_progress(work, "c", total_steps=10)
    assert first_step.wait(2)
    executor.cancel(task)
    task.wait(2)

    assert task.status is TaskStatus.CANCELLED
    assert [e.name for e in drain(handle)] == ["started", "progress", "error"]


def test_total_steps_must_be_positive(publisher: ProgressPublisher) -> None:
    with pytest.raises(ValueError):
        publisher.track_progress(_steps, "c", total_steps=0)
