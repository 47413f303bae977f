"""Shared fixtures for the pulse test-suite."""
from __future__ import annotations

import threading

import pytest

from apps.hub.pulse.core.dispatcher import Dispatcher
from apps.hub.pulse.core.executor import OverflowPolicy, TaskExecutor
from apps.hub.pulse.core.progress import ProgressPublisher
from apps.hub.pulse.core.registry import ConnectionRegistry


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry(queue_capacity=16)


@pytest.fixture
def dispatcher(registry: ConnectionRegistry) -> Dispatcher:
    return Dispatcher(registry, send_timeout=0.01)


@pytest.fixture
def executor():
    pool = TaskExecutor(
        core_size=2,
        max_size=4,
        queue_capacity=8,
        overflow=OverflowPolicy.REJECT,
        keep_alive=0.5,
    )
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def publisher(executor: TaskExecutor, registry: ConnectionRegistry, dispatcher: Dispatcher) -> ProgressPublisher:
    return ProgressPublisher(executor, registry, dispatcher)


@pytest.fixture
def gate():
    """Event that blocking test work waits on; always released at teardown."""
    event = threading.Event()
    yield event
    event.set()
