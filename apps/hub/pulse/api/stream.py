"""Server-sent events endpoints."""
from __future__ import annotations

import json
import uuid
from asyncio import to_thread
from typing import Any, AsyncIterator, Callable

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sse_starlette.sse import EventSourceResponse

from ..core.backoff import submit_with_backoff
from ..core.dispatcher import DeliveryResult
from ..core.errors import ChannelClosed, DuplicateConnection, ExecutorShutdown, QueueSaturated
from ..core.events import BROADCAST, CONNECTED, MESSAGE, Event
from ..core.executor import OverflowPolicy
from ..core.hub import Hub
from ..core.jobs import counter, process_data, simulated_steps
from ..core.registry import CloseReason, ConnectionHandle, ConnectionRegistry
from ..models.streams import (
    BroadcastResponse,
    ClientsResponse,
    MessageRequest,
    SendResponse,
)
from .deps import get_hub

router = APIRouter(prefix="/sse", tags=["sse"])

Serializer = Callable[[Event], dict[str, str]]


def json_serializer(event: Event) -> dict[str, str]:
    payload = dict(event.payload) | {"ts": event.timestamp.isoformat()}
    return {
        "event": event.name,
        "data": json.dumps(payload, default=str),
    }


async def stream_connection(
    registry: ConnectionRegistry,
    handle: ConnectionHandle,
    *,
    serializer: Serializer = json_serializer,
    poll_interval: float = 1.0,
    release_deadline: bool = False,
) -> AsyncIterator[dict[str, str]]:
    """Flush a connection's channel to the client until it closes or the client leaves.

    With ``release_deadline`` the attach deadline set at registration is lifted
    once the transport is actually reading.
    """
    if release_deadline:
        handle.deadline = None
    try:
        while True:
            try:
                event = await to_thread(handle.next_event, poll_interval)
            except ChannelClosed:
                break
            if event is None:
                continue
            yield serializer(event)
    finally:
        registry.remove(handle, CloseReason.CLOSED)
        handle.abandon()


def _register(hub: Hub, connection_id: str, *, timeout: float | None = None) -> ConnectionHandle:
    try:
        return hub.registry.register(connection_id, timeout=timeout)
    except DuplicateConnection as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


def _saturated(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get("/stream")
async def stream_events(
    client_id: str = Query("client", alias="clientId", min_length=1),
    hub: Hub = Depends(get_hub),
) -> EventSourceResponse:
    """Subscribe to broadcasts and direct messages."""
    handle = _register(hub, client_id, timeout=hub.settings.attach_timeout)
    await to_thread(
        hub.dispatcher.deliver,
        handle,
        Event.create(
            CONNECTED,
            {"clientId": client_id, "message": f"Connected to SSE stream. ClientId: {client_id}"},
        ),
    )
    return EventSourceResponse(stream_connection(hub.registry, handle, release_deadline=True))


@router.post("/broadcast", response_model=BroadcastResponse)
async def broadcast(payload: MessageRequest, hub: Hub = Depends(get_hub)) -> BroadcastResponse:
    """Send a message to every connected client."""
    report = await to_thread(
        hub.dispatcher.broadcast,
        Event.create(BROADCAST, {"message": payload.message, "type": "broadcast"}),
    )
    return BroadcastResponse(
        status="success",
        message=payload.message,
        sent_to=report.delivered,
        failed=report.failed,
        total=report.total,
        total_clients=hub.registry.count(),
    )


@router.post("/send/{client_id}", response_model=SendResponse)
async def send_to_client(
    client_id: str,
    payload: MessageRequest,
    hub: Hub = Depends(get_hub),
) -> SendResponse:
    """Send a message to one client."""
    result = await to_thread(
        hub.dispatcher.send_to,
        client_id,
        Event.create(MESSAGE, {"message": payload.message, "type": "direct"}),
    )
    if result is DeliveryResult.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Client not connected: {client_id}",
        )
    if result is DeliveryResult.FAILED:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail=f"Failed to send to {client_id}; connection dropped",
        )
    return SendResponse(status="success", message=f"Sent to client: {client_id}")


@router.get("/progress/{task_id}")
async def track_progress(
    task_id: str,
    steps: int = Query(10, ge=1, le=1000),
    delay: float = Query(1.0, ge=0, le=60),
    hub: Hub = Depends(get_hub),
) -> EventSourceResponse:
    """Run a simulated multi-step task and stream its progress."""
    handle = _register(hub, task_id, timeout=hub.settings.progress_timeout)
    try:
        await to_thread(
            hub.publisher.track_progress,
            simulated_steps(delay),
            task_id,
            steps,
            name=f"progress:{task_id}",
            overflow=OverflowPolicy.REJECT,
        )
    except (QueueSaturated, ExecutorShutdown) as exc:
        raise _saturated(exc) from exc
    return EventSourceResponse(stream_connection(hub.registry, handle))


@router.get("/counter")
async def stream_counter(
    duration: int = Query(30, ge=1, le=3600),
    interval: float = Query(1.0, ge=0, le=60),
    hub: Hub = Depends(get_hub),
) -> EventSourceResponse:
    """Stream a live counter."""
    connection_id = f"counter-{uuid.uuid4().hex}"
    handle = hub.registry.register(connection_id, timeout=duration * interval + 5)
    try:
        await to_thread(
            submit_with_backoff,
            hub.executor,
            counter(hub.dispatcher, hub.registry, handle, duration, interval),
            name=connection_id,
            overflow=OverflowPolicy.REJECT,
        )
    except (QueueSaturated, ExecutorShutdown) as exc:
        hub.registry.remove(handle, CloseReason.FAILED)
        raise _saturated(exc) from exc
    return EventSourceResponse(stream_connection(hub.registry, handle))


@router.post("/process-data")
async def process_data_with_updates(
    items: list[Any] = Body(...),
    delay: float = Query(0.1, ge=0, le=60),
    hub: Hub = Depends(get_hub),
) -> EventSourceResponse:
    """Process items in the background, one progress step per item."""
    if not items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No items to process")
    connection_id = f"process-{uuid.uuid4().hex}"
    handle = _register(hub, connection_id, timeout=hub.settings.progress_timeout)
    try:
        await to_thread(
            hub.publisher.track_progress,
            process_data(items, delay),
            connection_id,
            len(items),
            name="process-data",
            overflow=OverflowPolicy.REJECT,
        )
    except (QueueSaturated, ExecutorShutdown) as exc:
        raise _saturated(exc) from exc
    return EventSourceResponse(stream_connection(hub.registry, handle))


@router.get("/clients", response_model=ClientsResponse)
async def connected_clients(hub: Hub = Depends(get_hub)) -> ClientsResponse:
    ids = hub.registry.ids()
    return ClientsResponse(connected_clients=len(ids), client_ids=ids)
