"""Bounded worker pool for background tasks.

Admission follows the classic core/queue/max ladder:

    submit(work)
        |
        +-- fewer than core_size workers  -> start a worker for it
        +-- queue has room (idle workers  -> enqueue
        |   count as hand-off slots)
        +-- fewer than max_size workers   -> start a worker for it
        +-- otherwise                     -> overflow policy
                                             REJECT      -> QueueSaturated
                                             CALLER_RUNS -> run on caller

Neither the worker count nor the queue grows past its bound. A failing work
unit is recorded on its task and never takes the worker thread down.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from .errors import (
    DuplicateTask,
    ExecutorShutdown,
    QueueSaturated,
    TaskCancelled,
    TaskFailed,
    TaskNotFound,
    TaskTimeout,
)
from .tasks import ItemOutcome, TaskContext, TaskHandle, TaskStatus, TaskStatusSnapshot

logger = logging.getLogger(__name__)

TaskRef = Union[TaskHandle, str]


class OverflowPolicy(Enum):
    REJECT = "reject"
    CALLER_RUNS = "caller_runs"

    @classmethod
    def parse(cls, value: Union[str, "OverflowPolicy"]) -> "OverflowPolicy":
        if isinstance(value, cls):
            return value
        normalised = str(value).strip().lower().replace("-", "_")
        for policy in cls:
            if policy.value == normalised:
                return policy
        raise ValueError(f"Unknown overflow policy: {value!r}")


@dataclass(slots=True)
class _WorkItem:
    handle: TaskHandle
    work: Callable[..., Any]
    context: bool = False


class Worker(threading.Thread):
    """Pool thread: runs its first item, then keeps pulling from the queue."""

    def __init__(
        self,
        executor: "TaskExecutor",
        worker_id: int,
        first_item: Optional[_WorkItem] = None,
    ) -> None:
        super().__init__(name=f"{executor.thread_name_prefix}{worker_id}", daemon=True)
        self.executor = executor
        self.worker_id = worker_id
        self._first_item = first_item

    def run(self) -> None:
        logger.debug("Worker %s started", self.name)
        item, self._first_item = self._first_item, None
        try:
            while True:
                if item is not None:
                    self.executor._execute(item)
                    self.executor._finished_item()
                item = self.executor._next_item(self)
                if item is None:
                    break
        finally:
            self.executor._worker_exited(self)
            logger.debug("Worker %s stopped", self.name)


class TaskExecutor:
    """Runs submitted work on a bounded set of worker threads."""

    def __init__(
        self,
        core_size: int = 5,
        max_size: int = 10,
        queue_capacity: int = 100,
        *,
        overflow: Union[str, OverflowPolicy] = OverflowPolicy.CALLER_RUNS,
        keep_alive: float = 60.0,
        result_ttl: Optional[float] = 600.0,
        max_retained: Optional[int] = 1000,
        thread_name_prefix: str = "pulse-worker-",
    ) -> None:
        if core_size < 1:
            raise ValueError("core_size must be at least 1")
        if max_size < core_size:
            raise ValueError("max_size must be >= core_size")
        if queue_capacity < 0:
            raise ValueError("queue_capacity must be >= 0")
        self.core_size = core_size
        self.max_size = max_size
        self.queue_capacity = queue_capacity
        self.overflow = OverflowPolicy.parse(overflow)
        self.keep_alive = keep_alive
        self.result_ttl = result_ttl
        self.max_retained = max_retained
        self.thread_name_prefix = thread_name_prefix

        self._cond = threading.Condition()
        self._queue: deque[_WorkItem] = deque()
        self._workers: set[Worker] = set()
        self._next_worker_id = 0
        self._idle = 0
        self._active = 0
        self._shutdown = False
        self._completed = 0
        self._failed = 0
        self._rejected = 0
        self._caller_runs = 0

        self._tasks: dict[str, TaskHandle] = {}
        self._tasks_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Pre-start the core workers so the first submissions need not spawn."""
        with self._cond:
            if self._shutdown:
                raise ExecutorShutdown("executor has been shut down")
            while len(self._workers) < self.core_size:
                self._spawn(None)
        logger.info(
            "Task executor started: core=%d max=%d queue=%d overflow=%s",
            self.core_size,
            self.max_size,
            self.queue_capacity,
            self.overflow.value,
        )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop accepting work; finish queued tasks (or cancel them if not ``wait``)."""
        with self._cond:
            self._shutdown = True
            abandoned: list[_WorkItem] = []
            if not wait:
                abandoned = list(self._queue)
                self._queue.clear()
            workers = list(self._workers)
            self._cond.notify_all()
        for item in abandoned:
            item.handle.try_transition(
                TaskStatus.CANCELLED,
                error=ExecutorShutdown("executor shut down"),
                expected=TaskStatus.QUEUED,
            )
        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for worker in workers:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                worker.join(remaining)
                if worker.is_alive():
                    logger.warning("Worker %s still busy at shutdown", worker.name)
        logger.info("Task executor shut down (%d task(s) abandoned)", len(abandoned))

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        work: Callable[..., Any],
        *,
        task_id: Optional[str] = None,
        name: Optional[str] = None,
        context: bool = False,
        overflow: Union[str, OverflowPolicy, None] = None,
    ) -> TaskHandle:
        """Queue ``work`` and return its handle without waiting for it.

        With ``context=True`` the work is called with a :class:`TaskContext`.
        Raises :class:`QueueSaturated` when saturated under ``REJECT``; under
        ``CALLER_RUNS`` the work runs on the calling thread instead.
        ``overflow`` overrides the pool policy for this submission only.
        """
        if not callable(work):
            raise TypeError("work must be callable")
        policy = self.overflow if overflow is None else OverflowPolicy.parse(overflow)
        self.evict()
        handle = TaskHandle(task_id or uuid.uuid4().hex, name)
        item = _WorkItem(handle, work, context)
        self._retain(handle)
        try:
            accepted = self._offer(item)
        except ExecutorShutdown:
            self._forget(handle)
            raise
        if accepted:
            return handle

        if policy is OverflowPolicy.CALLER_RUNS:
            with self._cond:
                self._caller_runs += 1
            logger.debug("Executor saturated, running task %s on caller thread", handle.id)
            self._execute(item)
            return handle

        self._forget(handle)
        with self._cond:
            self._rejected += 1
        logger.warning("Task %s rejected: executor saturated", handle.id)
        raise QueueSaturated(
            f"executor saturated ({self.max_size} workers busy, "
            f"{self.queue_capacity} queued)"
        )

    def submit_many(
        self,
        works: Iterable[Callable[..., Any]],
        *,
        name: Optional[str] = None,
    ) -> TaskHandle:
        """Submit every work unit; the returned handle completes when all have.

        Its result is the ordered list of :class:`ItemOutcome`. One failing item
        does not cancel the others.
        """
        works = list(works)
        for index, work in enumerate(works):
            if not callable(work):
                raise TypeError(f"work item {index} is not callable")
        aggregate = TaskHandle(uuid.uuid4().hex, name or "batch")
        self._retain(aggregate)
        aggregate.transition(TaskStatus.RUNNING)
        batch = _Batch(aggregate, len(works))
        if not works:
            aggregate.transition(TaskStatus.SUCCEEDED, result=[])
            return aggregate
        for index, work in enumerate(works):
            try:
                child = self.submit(work, name=f"{aggregate.name}[{index}]")
            except (QueueSaturated, ExecutorShutdown) as exc:
                batch.record(ItemOutcome(index, None, TaskStatus.FAILED, error=str(exc)))
                continue
            child.add_done_callback(lambda handle, i=index: batch.record(_outcome(i, handle)))
        return aggregate

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def wait(self, task: TaskRef, timeout: Optional[float] = None) -> Any:
        """Block until the task is terminal and return its result.

        Timing out does not affect the task; it keeps running.
        """
        handle = self._resolve(task)
        if not handle.wait(timeout):
            raise TaskTimeout(handle.id, timeout)
        if handle.status is TaskStatus.FAILED:
            raise TaskFailed(handle.id, handle.error) from handle.error
        if handle.status is TaskStatus.CANCELLED:
            raise TaskCancelled(f"Task {handle.id} was cancelled")
        return handle.result

    def status(self, task: TaskRef) -> TaskStatusSnapshot:
        return self._resolve(task).snapshot()

    def get(self, task_id: str) -> Optional[TaskHandle]:
        with self._tasks_lock:
            return self._tasks.get(task_id)

    def cancel(self, task: TaskRef) -> bool:
        """Cancel a queued task outright, or flag a running one.

        Running work only ends CANCELLED if it checks its context and raises
        :class:`TaskCancelled`.
        """
        handle = self._resolve(task)
        if handle.try_transition(
            TaskStatus.CANCELLED,
            error=TaskCancelled(f"Task {handle.id} was cancelled"),
            expected=TaskStatus.QUEUED,
        ):
            with self._cond:
                for item in self._queue:
                    if item.handle is handle:
                        self._queue.remove(item)
                        break
            logger.info("Task %s cancelled before it started", handle.id)
            return True
        if handle.status is TaskStatus.RUNNING:
            handle.request_cancel()
            logger.info("Cancellation requested for running task %s", handle.id)
            return True
        return False

    def stats(self) -> dict[str, Any]:
        with self._tasks_lock:
            retained = len(self._tasks)
        with self._cond:
            return {
                "core_size": self.core_size,
                "max_size": self.max_size,
                "queue_capacity": self.queue_capacity,
                "overflow": self.overflow.value,
                "workers": len(self._workers),
                "active": self._active,
                "idle": self._idle,
                "queued": len(self._queue),
                "retained": retained,
                "completed": self._completed,
                "failed": self._failed,
                "rejected": self._rejected,
                "caller_runs": self._caller_runs,
            }

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def queued_count(self) -> int:
        with self._cond:
            return len(self._queue)

    def evict(self, now: Optional[float] = None) -> int:
        """Forget terminal tasks past ``result_ttl`` or beyond ``max_retained``."""
        now = now if now is not None else time.time()
        with self._tasks_lock:
            doomed = []
            if self.result_ttl is not None:
                doomed = [
                    task_id
                    for task_id, handle in self._tasks.items()
                    if handle.done
                    and handle.completed_at is not None
                    and now - handle.completed_at >= self.result_ttl
                ]
                for task_id in doomed:
                    del self._tasks[task_id]
            evicted = len(doomed)
            if self.max_retained is not None and len(self._tasks) > self.max_retained:
                excess = len(self._tasks) - self.max_retained
                finished = sorted(
                    (h for h in self._tasks.values() if h.done),
                    key=lambda h: h.completed_at or 0.0,
                )
                oldest = [h.id for h in finished[:excess]]
                for task_id in oldest:
                    del self._tasks[task_id]
                evicted += len(oldest)
        if evicted:
            logger.debug("Evicted %d finished task(s)", evicted)
        return evicted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _offer(self, item: _WorkItem) -> bool:
        with self._cond:
            if self._shutdown:
                raise ExecutorShutdown("executor has been shut down")
            if len(self._workers) < self.core_size:
                self._spawn(item)
                return True
            if len(self._queue) < self.queue_capacity + self._idle:
                self._queue.append(item)
                self._cond.notify()
                return True
            if len(self._workers) < self.max_size:
                self._spawn(item)
                return True
            return False

    def _spawn(self, first_item: Optional[_WorkItem]) -> Worker:
        # Caller holds self._cond.
        worker = Worker(self, self._next_worker_id, first_item)
        self._next_worker_id += 1
        self._workers.add(worker)
        if first_item is not None:
            self._active += 1
        worker.start()
        return worker

    def _next_item(self, worker: Worker) -> Optional[_WorkItem]:
        with self._cond:
            while True:
                if self._queue:
                    self._active += 1
                    return self._queue.popleft()
                if self._shutdown:
                    return None
                self._idle += 1
                try:
                    signalled = self._cond.wait(self.keep_alive)
                finally:
                    self._idle -= 1
                if (
                    not signalled
                    and not self._queue
                    and len(self._workers) > self.core_size
                ):
                    self._workers.discard(worker)
                    logger.debug("Retiring idle worker %s", worker.name)
                    return None

    def _finished_item(self) -> None:
        with self._cond:
            self._active -= 1

    def _worker_exited(self, worker: Worker) -> None:
        with self._cond:
            self._workers.discard(worker)
            self._cond.notify_all()

    def _execute(self, item: _WorkItem) -> None:
        handle = item.handle
        if not handle.try_transition(TaskStatus.RUNNING):
            return  # cancelled while queued
        started = time.monotonic()
        try:
            if item.context:
                result = item.work(TaskContext(handle))
            else:
                result = item.work()
        except TaskCancelled as exc:
            handle.try_transition(TaskStatus.CANCELLED, error=exc)
            logger.info("Task %s cancelled while running", handle.id)
        except Exception as exc:
            handle.try_transition(TaskStatus.FAILED, error=exc)
            with self._cond:
                self._failed += 1
            logger.exception(
                "Task %s failed after %.3fs: %s", handle.id, time.monotonic() - started, exc
            )
        else:
            handle.try_transition(TaskStatus.SUCCEEDED, result=result)
            with self._cond:
                self._completed += 1
            logger.debug("Task %s completed in %.3fs", handle.id, time.monotonic() - started)

    def _retain(self, handle: TaskHandle) -> None:
        with self._tasks_lock:
            if handle.id in self._tasks:
                raise DuplicateTask(handle.id)
            self._tasks[handle.id] = handle

    def _forget(self, handle: TaskHandle) -> None:
        with self._tasks_lock:
            if self._tasks.get(handle.id) is handle:
                del self._tasks[handle.id]

    def _resolve(self, task: TaskRef) -> TaskHandle:
        if isinstance(task, TaskHandle):
            return task
        handle = self.get(task)
        if handle is None:
            raise TaskNotFound(task)
        return handle


class _Batch:
    """Collects child outcomes for a ``submit_many`` aggregate."""

    def __init__(self, aggregate: TaskHandle, size: int) -> None:
        self.aggregate = aggregate
        self.size = size
        self._outcomes: list[Optional[ItemOutcome]] = [None] * size
        self._remaining = size
        self._lock = threading.Lock()

    def record(self, outcome: ItemOutcome) -> None:
        with self._lock:
            self._outcomes[outcome.index] = outcome
            self._remaining -= 1
            finished = self._remaining == 0
            self.aggregate.report_progress(self.size - self._remaining, self.size)
            outcomes = list(self._outcomes)
        if finished:
            self.aggregate.transition(TaskStatus.SUCCEEDED, result=outcomes)


def _outcome(index: int, handle: TaskHandle) -> ItemOutcome:
    return ItemOutcome(
        index=index,
        task_id=handle.id,
        status=handle.status,
        result=handle.result,
        error=str(handle.error) if handle.error is not None else None,
    )
