"""Registry of open one-way client connections.

Each connection owns a bounded :class:`Channel`. The core pushes events into
the channel and the transport (an SSE response, or a test double) pulls them
out and writes them to the client. The registry map is the only state shared
by every worker and transport thread, so its lock is held strictly for map
mutation and copying; channel writes always happen outside of it.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

from .errors import (
    ChannelClosed,
    ChannelFull,
    ConnectionNotFound,
    DeliveryFailed,
    DuplicateConnection,
)
from .events import Event

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(Enum):
    """Why a connection left the registry."""

    CLOSED = "closed"        # creator closed it
    COMPLETED = "completed"  # owning task finished
    FAILED = "failed"        # a send could not be delivered
    EXPIRED = "expired"      # deadline elapsed

    @property
    def discards(self) -> bool:
        """Whether queued-but-unsent events are dropped instead of drained."""
        return self in (CloseReason.FAILED, CloseReason.EXPIRED)


class Channel:
    """Bounded FIFO between one producer side and one transport reader."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[Event] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def put(self, event: Event, timeout: Optional[float] = None) -> None:
        with self._cond:
            if self._closed:
                raise ChannelClosed("channel is closed")
            if len(self._items) >= self.capacity:
                self._cond.wait_for(
                    lambda: self._closed or len(self._items) < self.capacity,
                    timeout,
                )
                if self._closed:
                    raise ChannelClosed("channel closed while waiting for space")
                if len(self._items) >= self.capacity:
                    raise ChannelFull(f"channel full ({self.capacity} events)")
            self._items.append(event)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, ``None`` on timeout.

        Raises :class:`ChannelClosed` once the channel is closed and empty.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if self._items:
                event = self._items.popleft()
                self._cond.notify_all()
                return event
            if self._closed:
                raise ChannelClosed("channel is closed")
            return None

    def close(self, discard: bool = False) -> int:
        """Stop accepting events; returns how many queued events were dropped."""
        with self._cond:
            self._closed = True
            dropped = 0
            if discard:
                dropped = len(self._items)
                self._items.clear()
            self._cond.notify_all()
            return dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        with self._cond:
            return len(self._items)


class ConnectionHandle:
    """A registered connection as seen by the core and by its transport."""

    def __init__(
        self,
        connection_id: str,
        channel: Channel,
        *,
        deadline: Optional[float] = None,
        opened_at: Optional[float] = None,
    ) -> None:
        self.id = connection_id
        self.channel = channel
        self.deadline = deadline
        self.opened_at = opened_at if opened_at is not None else time.time()
        self.close_reason: Optional[CloseReason] = None
        self._state = ConnectionState.OPEN
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ConnectionHandle(id={self.id!r}, state={self._state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def expired(self, now: Optional[float] = None) -> bool:
        if self.deadline is None:
            return False
        return (now if now is not None else time.time()) >= self.deadline

    def send(self, event: Event, timeout: Optional[float] = None) -> None:
        """Queue ``event`` for the transport or raise :class:`DeliveryFailed`."""
        if self._state is not ConnectionState.OPEN:
            raise DeliveryFailed(self.id, f"connection is {self._state.value}")
        try:
            self.channel.put(event, timeout)
        except ChannelFull as exc:
            raise DeliveryFailed(self.id, "outbound queue full") from exc
        except ChannelClosed as exc:
            raise DeliveryFailed(self.id, "channel closed") from exc
        except OSError as exc:
            raise DeliveryFailed(self.id, f"transport write error: {exc}") from exc

    def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Transport side read. ``None`` on timeout; ChannelClosed at end of stream."""
        try:
            return self.channel.get(timeout)
        except ChannelClosed:
            self._set_state(ConnectionState.CLOSED)
            raise

    def close(self, reason: CloseReason = CloseReason.CLOSED) -> bool:
        """Move OPEN -> CLOSING -> (possibly) CLOSED. False if already closing."""
        with self._state_lock:
            if self._state is not ConnectionState.OPEN:
                return False
            self._state = ConnectionState.CLOSING
            self.close_reason = reason
        dropped = self.channel.close(discard=reason.discards)
        if dropped:
            logger.debug("Discarded %d queued events for %s", dropped, self.id)
        if reason.discards or self.channel.qsize() == 0:
            self._set_state(ConnectionState.CLOSED)
        return True

    def abandon(self) -> None:
        """Drop whatever is still queued; used when the transport goes away."""
        self.close(CloseReason.FAILED)
        self.channel.close(discard=True)
        self._set_state(ConnectionState.CLOSED)

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            self._state = state


class ConnectionRegistry:
    """Thread-safe map from connection id to :class:`ConnectionHandle`."""

    def __init__(
        self,
        queue_capacity: int = 100,
        *,
        default_timeout: Optional[float] = None,
        channel_factory: Optional[Callable[[], Channel]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue_capacity = queue_capacity
        self.default_timeout = default_timeout
        self._channel_factory = channel_factory or (lambda: Channel(queue_capacity))
        self._clock = clock
        self._connections: dict[str, ConnectionHandle] = {}
        self._lock = threading.Lock()

    def register(
        self,
        connection_id: str,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
        channel: Optional[Channel] = None,
    ) -> ConnectionHandle:
        """Open ``connection_id``; visible to lookup and broadcast on return."""
        if not connection_id:
            raise ValueError("connection id must not be empty")
        now = self._clock()
        if deadline is None:
            relative = timeout if timeout is not None else self.default_timeout
            if relative is not None:
                deadline = now + relative
        handle = ConnectionHandle(
            connection_id,
            channel if channel is not None else self._channel_factory(),
            deadline=deadline,
            opened_at=now,
        )
        with self._lock:
            if connection_id in self._connections:
                raise DuplicateConnection(connection_id)
            self._connections[connection_id] = handle
        logger.info("Connection registered: %s", connection_id)
        return handle

    def deregister(
        self,
        connection_id: str,
        reason: CloseReason = CloseReason.CLOSED,
    ) -> Optional[ConnectionHandle]:
        """Remove ``connection_id``. Absent ids are a no-op."""
        with self._lock:
            handle = self._connections.pop(connection_id, None)
        if handle is None:
            return None
        self._close(handle, reason)
        return handle

    def remove(self, handle: ConnectionHandle, reason: CloseReason) -> bool:
        """Remove ``handle`` only if it is still the entry for its id.

        Protects a fresh connection that reused the id of one that just failed.
        """
        with self._lock:
            if self._connections.get(handle.id) is not handle:
                removed = False
            else:
                del self._connections[handle.id]
                removed = True
        if removed:
            self._close(handle, reason)
        else:
            handle.close(reason)
        return removed

    def lookup(self, connection_id: str) -> ConnectionHandle:
        handle = self.get(connection_id)
        if handle is None:
            raise ConnectionNotFound(connection_id)
        return handle

    def get(self, connection_id: str) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._connections.get(connection_id)

    def snapshot(self) -> list[ConnectionHandle]:
        """Point-in-time copy in registration order."""
        with self._lock:
            return list(self._connections.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._connections)

    def count(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def expire(self, now: Optional[float] = None) -> list[str]:
        """Deregister every connection whose deadline has elapsed."""
        now = now if now is not None else self._clock()
        with self._lock:
            expired = [h for h in self._connections.values() if h.expired(now)]
            for handle in expired:
                del self._connections[handle.id]
        for handle in expired:
            self._close(handle, CloseReason.EXPIRED)
        return [handle.id for handle in expired]

    def close_all(self, reason: CloseReason = CloseReason.CLOSED) -> int:
        with self._lock:
            handles = list(self._connections.values())
            self._connections.clear()
        for handle in handles:
            self._close(handle, reason)
        return len(handles)

    def _close(self, handle: ConnectionHandle, reason: CloseReason) -> None:
        handle.close(reason)
        if reason.discards:
            logger.warning("Connection dropped (%s): %s", reason.value, handle.id)
        else:
            logger.info("Connection closed (%s): %s", reason.value, handle.id)


class ConnectionReaper(threading.Thread):
    """Background sweep that deregisters connections past their deadline."""

    def __init__(self, registry: ConnectionRegistry, interval: float = 1.0) -> None:
        super().__init__(name="ConnectionReaper", daemon=True)
        self.registry = registry
        self.interval = interval
        self._shutdown = threading.Event()

    def run(self) -> None:
        logger.debug("Connection reaper started (interval %.2fs)", self.interval)
        while not self._shutdown.wait(self.interval):
            expired = self.registry.expire()
            if expired:
                logger.info("Expired %d connection(s): %s", len(expired), ", ".join(expired))
        logger.debug("Connection reaper stopped")

    def stop(self, timeout: float = 2.0) -> None:
        self._shutdown.set()
        if self.is_alive():
            self.join(timeout)
