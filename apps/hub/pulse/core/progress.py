"""Stream a task's step progress to one dedicated connection.

Per task the subscriber sees::

    started -> progress(1/n) -> ... -> progress(n/n) -> complete | error

after which the connection is deregistered. If the subscriber disappears the
task keeps running; only the event stream stops.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, Optional, Union

from .dispatcher import DeliveryResult, Dispatcher
from .errors import DuplicateConnection, DuplicateTask, ExecutorShutdown, QueueSaturated
from .events import COMPLETE, ERROR, PROGRESS, STARTED, Event
from .executor import OverflowPolicy, TaskExecutor
from .registry import CloseReason, ConnectionHandle, ConnectionRegistry
from .tasks import TaskContext, TaskHandle

logger = logging.getLogger(__name__)


class ProgressStream:
    """Events of one task bound to the connection that watches it."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        registry: ConnectionRegistry,
        handle: ConnectionHandle,
        task_id: str,
    ) -> None:
        self.dispatcher = dispatcher
        self.registry = registry
        self.handle = handle
        self.task_id = task_id
        self._listening = True

    @property
    def listening(self) -> bool:
        return self._listening

    def emit(self, name: str, payload: dict[str, Any]) -> bool:
        if not self._listening:
            return False
        event = Event.create(name, {"taskId": self.task_id, **payload})
        result = self.dispatcher.deliver(self.handle, event)
        if result is not DeliveryResult.DELIVERED:
            self._listening = False
            logger.info(
                "Subscriber %s for task %s is gone; task continues without it",
                self.handle.id,
                self.task_id,
            )
        return self._listening

    def finish(self, name: str, payload: dict[str, Any]) -> None:
        self.emit(name, payload)
        self.registry.remove(self.handle, CloseReason.COMPLETED)


class ProgressReporter:
    """Given to progress-tracked work so it can announce finished steps."""

    def __init__(self, stream: ProgressStream, context: TaskContext, total_steps: int) -> None:
        self._stream = stream
        self._context = context
        self.total = total_steps
        self._step = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        return self._step

    @property
    def task_id(self) -> str:
        return self._context.task_id

    @property
    def cancelled(self) -> bool:
        return self._context.cancelled

    def raise_if_cancelled(self) -> None:
        self._context.raise_if_cancelled()

    def advance(self, message: Optional[str] = None) -> bool:
        with self._lock:
            return self._record(self._step + 1, message)

    def step(self, step: int, message: Optional[str] = None) -> bool:
        """Mark ``step`` (1-based) done. Steps that do not move forward are ignored."""
        with self._lock:
            return self._record(step, message)

    def _record(self, step: int, message: Optional[str]) -> bool:
        if step <= self._step or step > self.total:
            logger.warning(
                "Ignoring progress step %d/%d for task %s (last was %d)",
                step,
                self.total,
                self.task_id,
                self._step,
            )
            return False
        self._step = step
        self._context.report(step, self.total, message)
        self._stream.emit(
            PROGRESS,
            {
                "step": step,
                "total": self.total,
                "percent": 100 * step // self.total,
                "message": message or f"Processing step {step} of {self.total}",
            },
        )
        return True


class ProgressPublisher:
    """Runs tasks on the executor while relaying their progress to a connection."""

    def __init__(
        self,
        executor: TaskExecutor,
        registry: ConnectionRegistry,
        dispatcher: Dispatcher,
        *,
        stream_timeout: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.registry = registry
        self.dispatcher = dispatcher
        self.stream_timeout = stream_timeout

    def open(self, connection_id: str) -> ConnectionHandle:
        """Return the connection for ``connection_id``, registering it if needed."""
        handle = self.registry.get(connection_id)
        if handle is not None:
            return handle
        try:
            return self.registry.register(connection_id, timeout=self.stream_timeout)
        except DuplicateConnection:
            return self.registry.lookup(connection_id)

    def track_progress(
        self,
        work: Callable[[ProgressReporter], Any],
        connection_id: str,
        total_steps: int,
        *,
        task_id: Optional[str] = None,
        name: Optional[str] = None,
        overflow: Union[str, OverflowPolicy, None] = None,
    ) -> TaskHandle:
        if total_steps < 1:
            raise ValueError("total_steps must be at least 1")
        task_id = task_id or uuid.uuid4().hex
        stream = ProgressStream(self.dispatcher, self.registry, self.open(connection_id), task_id)
        stream.emit(STARTED, {"totalSteps": total_steps})

        def run(context: TaskContext) -> Any:
            reporter = ProgressReporter(stream, context, total_steps)
            try:
                result = work(reporter)
            except Exception as exc:
                stream.finish(ERROR, {"message": str(exc) or type(exc).__name__})
                raise
            stream.finish(COMPLETE, {"result": result})
            return result

        try:
            return self.executor.submit(
                run, task_id=task_id, name=name, context=True, overflow=overflow
            )
        except (QueueSaturated, ExecutorShutdown, DuplicateTask) as exc:
            stream.finish(ERROR, {"message": str(exc)})
            raise
