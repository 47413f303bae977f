"""Background task endpoints."""
from __future__ import annotations

import time
from asyncio import to_thread
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.backoff import submit_with_backoff
from ..core.errors import (
    ExecutorShutdown,
    QueueSaturated,
    TaskCancelled,
    TaskFailed,
    TaskNotFound,
    TaskTimeout,
)
from ..core.hub import Hub
from ..core.jobs import named_sleep
from ..core.tasks import TaskHandle
from ..models.tasks import (
    BatchCompleted,
    CancelResponse,
    TaskCompleted,
    TaskRequest,
    TaskSubmitted,
)
from .deps import get_hub

router = APIRouter(prefix="/tasks", tags=["tasks"])


async def _submit(hub: Hub, work, **kwargs: Any) -> TaskHandle:
    try:
        return await to_thread(submit_with_backoff, hub.executor, work, **kwargs)
    except (QueueSaturated, ExecutorShutdown) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _failed(exc: TaskFailed) -> str:
    return str(exc.error) if exc.error is not None else str(exc)


@router.post("/fire-and-forget", response_model=TaskSubmitted)
async def fire_and_forget(
    payload: TaskRequest | None = None,
    hub: Hub = Depends(get_hub),
) -> TaskSubmitted:
    """Return at once while the task runs in the background."""
    payload = payload or TaskRequest()
    handle = await _submit(
        hub,
        named_sleep(payload.task_name, payload.duration_seconds),
        name=payload.task_name,
    )
    return TaskSubmitted(
        task_id=handle.id,
        message=f"Task '{payload.task_name}' submitted for async processing",
    )


@router.post("/with-result", response_model=TaskCompleted)
async def with_result(
    payload: TaskRequest | None = None,
    hub: Hub = Depends(get_hub),
) -> TaskCompleted:
    """Run a task in the pool and wait for its result."""
    payload = payload or TaskRequest()
    started = time.monotonic()
    handle = await _submit(
        hub,
        named_sleep(payload.task_name, payload.duration_seconds),
        name=payload.task_name,
    )
    try:
        result = await to_thread(hub.executor.wait, handle)
    except TaskFailed as exc:
        return TaskCompleted(
            status="error",
            task_id=handle.id,
            task_name=payload.task_name,
            message=_failed(exc),
            total_time_ms=_elapsed_ms(started),
        )
    return TaskCompleted(
        status="completed",
        task_id=handle.id,
        task_name=payload.task_name,
        result=result,
        total_time_ms=_elapsed_ms(started),
    )


@router.post("/parallel", response_model=BatchCompleted)
async def parallel(
    task_count: int = Query(5, ge=1, le=100, alias="taskCount"),
    duration: float = Query(2.0, ge=0, le=60, alias="durationSeconds"),
    hub: Hub = Depends(get_hub),
) -> BatchCompleted:
    """Run several tasks at once and wait for all of them."""
    started = time.monotonic()
    works = [named_sleep(f"ParallelTask-{i}", duration) for i in range(1, task_count + 1)]
    aggregate = await to_thread(hub.executor.submit_many, works, name="parallel")
    outcomes = await to_thread(hub.executor.wait, aggregate)
    return BatchCompleted(
        status="completed",
        task_id=aggregate.id,
        task_count=task_count,
        results=[outcome.to_dict() for outcome in outcomes],
        total_time_ms=_elapsed_ms(started),
    )


@router.post("/with-timeout", response_model=TaskCompleted)
async def with_timeout(
    timeout: float = Query(3.0, ge=0, le=300, alias="timeoutSeconds"),
    duration: float = Query(5.0, ge=0, le=300, alias="durationSeconds"),
    hub: Hub = Depends(get_hub),
) -> TaskCompleted:
    """Stop waiting after ``timeoutSeconds``; the task itself keeps running."""
    started = time.monotonic()
    handle = await _submit(hub, named_sleep("TimeoutTask", duration), name="TimeoutTask")
    try:
        result = await to_thread(hub.executor.wait, handle, timeout)
    except TaskTimeout:
        return TaskCompleted(
            status="timeout",
            task_id=handle.id,
            task_name="TimeoutTask",
            message=f"Task did not complete within {timeout:g} seconds",
            total_time_ms=_elapsed_ms(started),
        )
    return TaskCompleted(
        status="completed",
        task_id=handle.id,
        task_name="TimeoutTask",
        result=result,
        total_time_ms=_elapsed_ms(started),
    )


@router.post("/with-error", response_model=TaskCompleted)
async def with_error(
    fail: bool = Query(True),
    hub: Hub = Depends(get_hub),
) -> TaskCompleted:
    """Show how a failing task is reported without hurting the pool."""
    started = time.monotonic()

    def work() -> str:
        if fail:
            raise RuntimeError("Simulated processing error")
        return "Success!"

    handle = await _submit(hub, work, name="ErrorTask")
    try:
        result = await to_thread(hub.executor.wait, handle)
    except TaskFailed as exc:
        return TaskCompleted(
            status="error",
            task_id=handle.id,
            task_name="ErrorTask",
            message=_failed(exc),
            total_time_ms=_elapsed_ms(started),
        )
    return TaskCompleted(
        status="success",
        task_id=handle.id,
        task_name="ErrorTask",
        result=result,
        total_time_ms=_elapsed_ms(started),
    )


@router.get("/stats")
async def executor_stats(hub: Hub = Depends(get_hub)) -> dict[str, Any]:
    return hub.executor.stats()


@router.get("/{task_id}")
async def task_status(task_id: str, hub: Hub = Depends(get_hub)) -> dict[str, Any]:
    try:
        return hub.executor.status(task_id).to_dict()
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{task_id}/result", response_model=TaskCompleted)
async def task_result(
    task_id: str,
    timeout: float = Query(0.0, ge=0, le=300),
    hub: Hub = Depends(get_hub),
) -> TaskCompleted:
    try:
        result = await to_thread(hub.executor.wait, task_id, timeout)
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TaskTimeout:
        snapshot = hub.executor.status(task_id)
        return TaskCompleted(status=snapshot.status.value, task_id=task_id, task_name=snapshot.name)
    except TaskFailed as exc:
        return TaskCompleted(status="failed", task_id=task_id, message=_failed(exc))
    except TaskCancelled as exc:
        return TaskCompleted(status="cancelled", task_id=task_id, message=str(exc))
    return TaskCompleted(status="succeeded", task_id=task_id, result=result)


@router.post("/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(task_id: str, hub: Hub = Depends(get_hub)) -> CancelResponse:
    try:
        cancelled = hub.executor.cancel(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CancelResponse(
        task_id=task_id,
        cancelled=cancelled,
        status=hub.executor.status(task_id).status.value,
    )
