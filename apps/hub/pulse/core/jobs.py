"""Work units behind the demo endpoints."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .dispatcher import DeliveryResult, Dispatcher
from .events import COUNT, FINISHED, Event
from .progress import ProgressReporter
from .registry import CloseReason, ConnectionHandle, ConnectionRegistry


@dataclass(slots=True)
class ProcessingResult:
    total_items: int
    success_count: int
    error_count: int
    processed_data: list[str] = field(default_factory=list)
    duration_ms: int = 0
    thread_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "processedData": list(self.processed_data),
            "durationMs": self.duration_ms,
            "threadName": self.thread_name,
        }


def process_item(item: str) -> str:
    if not isinstance(item, str):
        raise TypeError(f"expected text, got {type(item).__name__}")
    return item.upper() + "_PROCESSED"


def simulated_steps(delay: float) -> Callable[[ProgressReporter], str]:
    """Progress work that sleeps ``delay`` seconds per step."""

    def work(reporter: ProgressReporter) -> str:
        for _ in range(reporter.total):
            reporter.raise_if_cancelled()
            time.sleep(delay)
            reporter.advance()
        return "Task completed successfully!"

    return work


def process_data(items: Sequence[str], delay: float) -> Callable[[ProgressReporter], dict[str, Any]]:
    """Progress work that processes one item per step; bad items are counted, not raised."""

    def work(reporter: ProgressReporter) -> dict[str, Any]:
        started = time.monotonic()
        processed: list[str] = []
        errors = 0
        for item in items:
            reporter.raise_if_cancelled()
            time.sleep(delay)
            try:
                processed.append(process_item(item))
            except TypeError:
                errors += 1
            reporter.advance(f"Processed {len(processed) + errors} of {len(items)}")
        return ProcessingResult(
            total_items=len(items),
            success_count=len(processed),
            error_count=errors,
            processed_data=processed,
            duration_ms=int((time.monotonic() - started) * 1000),
            thread_name=threading.current_thread().name,
        ).to_dict()

    return work


def named_sleep(name: str, seconds: float) -> Callable[[], str]:
    def work() -> str:
        time.sleep(seconds)
        return (
            f"Task '{name}' completed in {seconds:g} seconds "
            f"by {threading.current_thread().name}"
        )

    return work


def counter(
    dispatcher: Dispatcher,
    registry: ConnectionRegistry,
    handle: ConnectionHandle,
    duration: int,
    interval: float,
) -> Callable[[], int]:
    """Emit ``count`` events once per ``interval`` then ``finished``; stops early if nobody listens."""

    def work() -> int:
        sent = 0
        for i in range(1, duration + 1):
            time.sleep(interval)
            event = Event.create(
                COUNT,
                {"count": i, "total": duration, "percentage": 100 * i // duration},
            )
            if dispatcher.deliver(handle, event) is not DeliveryResult.DELIVERED:
                return sent
            sent = i
        dispatcher.deliver(handle, Event.create(FINISHED, {"message": "Counter finished!"}))
        registry.remove(handle, CloseReason.COMPLETED)
        return sent

    return work
