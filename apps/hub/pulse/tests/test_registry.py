"""Tests for the connection registry and its channels."""
from __future__ import annotations

import threading
import time

import pytest

from apps.hub.pulse.core.errors import (
    ChannelClosed,
    ChannelFull,
    ConnectionNotFound,
    DeliveryFailed,
    DuplicateConnection,
)
from apps.hub.pulse.core.events import Event
from apps.hub.pulse.core.registry import (
    Channel,
    CloseReason,
    ConnectionReaper,
    ConnectionRegistry,
    ConnectionState,
)

from apps.hub.pulse.tests.transport_doubles import drain


def test_register_makes_connection_visible(registry: ConnectionRegistry) -> None:
    handle = registry.register("c1")
    assert registry.lookup("c1") is handle
    assert [h.id for h in registry.snapshot()] == ["c1"]
    assert registry.count() == 1
    assert handle.state is ConnectionState.OPEN


def test_register_duplicate_id_fails(registry: ConnectionRegistry) -> None:
    registry.register("c1")
    with pytest.raises(DuplicateConnection):
        registry.register("c1")
    assert registry.count() == 1


def test_register_rejects_empty_id(registry: ConnectionRegistry) -> None:
    with pytest.raises(ValueError):
        registry.register("")


def test_deregister_is_idempotent(registry: ConnectionRegistry) -> None:
    handle = registry.register("c1")
    assert registry.deregister("c1") is handle
    assert registry.deregister("c1") is None
    assert registry.deregister("never-registered") is None
    with pytest.raises(ConnectionNotFound):
        registry.lookup("c1")
    assert handle.state is ConnectionState.CLOSED


def test_id_can_be_reused_after_deregister(registry: ConnectionRegistry) -> None:
    first = registry.register("c1")
    registry.deregister("c1")
    second = registry.register("c1")
    assert second is not first
    assert registry.lookup("c1") is second


def test_failed_deregister_discards_queued_events(registry: ConnectionRegistry) -> None:
    handle = registry.register("c1")
    handle.send(Event.create("one"))
    handle.send(Event.create("two"))
    registry.deregister("c1", CloseReason.FAILED)
    assert handle.state is ConnectionState.CLOSED
    assert handle.channel.qsize() == 0
    with pytest.raises(ChannelClosed):
        handle.next_event(0)


def test_completed_deregister_lets_transport_drain(registry: ConnectionRegistry) -> None:
    handle = registry.register("c1")
    handle.send(Event.create("one"))
    handle.send(Event.create("two"))
    registry.deregister("c1", CloseReason.COMPLETED)
    assert "c1" not in registry
    assert handle.state is ConnectionState.CLOSING
    assert [event.name for event in drain(handle)] == ["one", "two"]
    assert handle.state is ConnectionState.CLOSED


def test_send_to_closed_handle_fails(registry: ConnectionRegistry) -> None:
    handle = registry.register("c1")
    registry.deregister("c1")
    with pytest.raises(DeliveryFailed):
        handle.send(Event.create("late"))


def test_remove_leaves_newer_connection_with_same_id(registry: ConnectionRegistry) -> None:
    stale = registry.register("c1")
    registry.deregister("c1")
    fresh = registry.register("c1")
    assert registry.remove(stale, CloseReason.FAILED) is False
    assert registry.lookup("c1") is fresh
    assert fresh.is_open


def test_snapshot_is_a_copy(registry: ConnectionRegistry) -> None:
    registry.register("a")
    registry.register("b")
    snapshot = registry.snapshot()
    registry.deregister("a")
    registry.register("c")
    assert [h.id for h in snapshot] == ["a", "b"]
    assert registry.ids() == ["b", "c"]


def test_expire_removes_connections_past_deadline() -> None:
    now = [1000.0]
    registry = ConnectionRegistry(queue_capacity=4, clock=lambda: now[0])
    registry.register("short", timeout=5)
    registry.register("long", timeout=60)
    registry.register("forever")
    now[0] += 10
    assert registry.expire() == ["short"]
    assert registry.ids() == ["long", "forever"]


def test_default_timeout_applies_to_registrations() -> None:
    registry = ConnectionRegistry(queue_capacity=4, default_timeout=30, clock=lambda: 100.0)
    handle = registry.register("c1")
    assert handle.deadline == pytest.approx(130.0)
    explicit = registry.register("c2", deadline=500.0)
    assert explicit.deadline == 500.0


def test_reaper_expires_silent_connections(registry: ConnectionRegistry) -> None:
    handle = registry.register("idle", timeout=0.05)
    reaper = ConnectionReaper(registry, interval=0.02)
    reaper.start()
    try:
        deadline = time.monotonic() + 2
        while "idle" in registry and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        reaper.stop()
    assert "idle" not in registry
    assert handle.close_reason is CloseReason.EXPIRED
    assert not reaper.is_alive()


def test_channel_full_raises_after_timeout() -> None:
    channel = Channel(capacity=1)
    channel.put(Event.create("one"))
    started = time.monotonic()
    with pytest.raises(ChannelFull):
        channel.put(Event.create("two"), timeout=0.05)
    assert time.monotonic() - started < 1


def test_channel_get_times_out_with_none() -> None:
    channel = Channel(capacity=1)
    assert channel.get(timeout=0.01) is None


def test_concurrent_register_deregister_and_snapshot(registry: ConnectionRegistry) -> None:
    errors: list[BaseException] = []
    stop = threading.Event()

    def churn(prefix: str) -> None:
        try:
            i = 0
            while not stop.is_set():
                connection_id = f"{prefix}-{i % 20}"
                try:
                    registry.register(connection_id)
                except DuplicateConnection:
                    registry.deregister(connection_id)
                i += 1
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    def observe() -> None:
        try:
            while not stop.is_set():
                for handle in registry.snapshot():
                    if handle.state is ConnectionState.CLOSED:
                        assert registry.get(handle.id) is not handle
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=churn, args=(f"t{n}",)) for n in range(4)]
    threads.append(threading.Thread(target=observe))
    for thread in threads:
        thread.start()
    time.sleep(0.3)
    stop.set()
    for thread in threads:
        thread.join(5)

    assert errors == []
    for handle in registry.snapshot():
        assert handle.state is ConnectionState.OPEN
