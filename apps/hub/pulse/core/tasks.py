"""Task records shared by the executor and the progress publisher."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import InvalidTransition, TaskCancelled

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
}


@dataclass(frozen=True, slots=True)
class TaskStatusSnapshot:
    """Non-blocking, point-in-time view of a task."""

    id: str
    name: str
    status: TaskStatus
    submitted_at: float
    started_at: Optional[float]
    completed_at: Optional[float]
    result: Any
    error: Optional[str]
    step: int
    total: Optional[int]
    message: Optional[str] = None

    @property
    def percent(self) -> Optional[int]:
        if not self.total:
            return None
        return 100 * self.step // self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.id,
            "name": self.name,
            "status": self.status.value,
            "submittedAt": self.submitted_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "result": self.result,
            "error": self.error,
            "step": self.step,
            "total": self.total,
            "percent": self.percent,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    """Per-item result carried by an aggregate ``submit_many`` handle."""

    index: int
    task_id: Optional[str]
    status: TaskStatus
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "taskId": self.task_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }


class TaskHandle:
    """Live record of one submitted unit of work.

    Status only moves forward: QUEUED -> RUNNING -> terminal, or QUEUED ->
    CANCELLED when a queued task is cancelled. Only the executing worker (and
    ``cancel``) mutate it.
    """

    def __init__(
        self,
        task_id: str,
        name: Optional[str] = None,
        *,
        submitted_at: Optional[float] = None,
    ) -> None:
        self.id = task_id
        self.name = name or task_id
        self.submitted_at = submitted_at if submitted_at is not None else time.time()
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.step = 0
        self.total: Optional[int] = None
        self.message: Optional[str] = None
        self._status = TaskStatus.QUEUED
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._cancel_requested = threading.Event()
        self._callbacks: list[Callable[["TaskHandle"], None]] = []

    def __repr__(self) -> str:
        return f"TaskHandle(id={self.id!r}, status={self._status.value})"

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until terminal; False if ``timeout`` elapsed first."""
        return self._done.wait(timeout)

    def add_done_callback(self, fn: Callable[["TaskHandle"], None]) -> None:
        with self._lock:
            if not self._status.is_terminal:
                self._callbacks.append(fn)
                return
        self._invoke(fn)

    def report_progress(self, step: int, total: Optional[int], message: Optional[str] = None) -> None:
        with self._lock:
            self.step = step
            self.total = total
            self.message = message

    def snapshot(self) -> TaskStatusSnapshot:
        with self._lock:
            return TaskStatusSnapshot(
                id=self.id,
                name=self.name,
                status=self._status,
                submitted_at=self.submitted_at,
                started_at=self.started_at,
                completed_at=self.completed_at,
                result=self.result,
                error=str(self.error) if self.error is not None else None,
                step=self.step,
                total=self.total,
                message=self.message,
            )

    def try_transition(
        self,
        status: TaskStatus,
        *,
        result: Any = None,
        error: Optional[BaseException] = None,
        expected: Optional[TaskStatus] = None,
    ) -> bool:
        """Apply ``status`` if it is a legal next state; False otherwise.

        With ``expected`` the change only happens from that exact state.
        """
        with self._lock:
            if expected is not None and self._status is not expected:
                return False
            if status not in _TRANSITIONS.get(self._status, frozenset()):
                return False
            self._status = status
            now = time.time()
            if status is TaskStatus.RUNNING:
                self.started_at = now
                return True
            self.completed_at = now
            self.result = result
            self.error = error
            callbacks, self._callbacks = self._callbacks, []
        self._done.set()
        for fn in callbacks:
            self._invoke(fn)
        return True

    def transition(self, status: TaskStatus, **kwargs: Any) -> None:
        previous = self._status
        if not self.try_transition(status, **kwargs):
            raise InvalidTransition(
                f"Task {self.id}: {previous.value} -> {status.value} is not allowed"
            )

    def request_cancel(self) -> None:
        self._cancel_requested.set()

    def _invoke(self, fn: Callable[["TaskHandle"], None]) -> None:
        try:
            fn(self)
        except Exception:
            logger.exception("Done callback for task %s raised", self.id)


class TaskContext:
    """Handed to work units submitted with ``context=True``."""

    def __init__(self, handle: TaskHandle) -> None:
        self._handle = handle

    @property
    def task_id(self) -> str:
        return self._handle.id

    @property
    def cancelled(self) -> bool:
        return self._handle.cancel_requested

    def raise_if_cancelled(self) -> None:
        if self._handle.cancel_requested:
            raise TaskCancelled(f"Task {self._handle.id} was cancelled")

    def report(self, step: int, total: Optional[int] = None, message: Optional[str] = None) -> None:
        self._handle.report_progress(step, total, message)
