"""Deliver events to one or all registered connections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .errors import DeliveryFailed
from .events import Event
from .registry import CloseReason, ConnectionHandle, ConnectionRegistry

logger = logging.getLogger(__name__)


class DeliveryResult(Enum):
    DELIVERED = "delivered"
    NOT_FOUND = "not_found"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is DeliveryResult.DELIVERED


@dataclass(frozen=True, slots=True)
class BroadcastReport:
    """Outcome counts of a single broadcast."""

    delivered: int
    failed: int
    total: int

    def to_dict(self) -> dict[str, int]:
        return {"delivered": self.delivered, "failed": self.failed, "total": self.total}


class Dispatcher:
    """Pushes events into connection channels.

    A connection that cannot take an event is assumed dead and removed from
    the registry. Failures are reported as results, never raised.
    """

    def __init__(self, registry: ConnectionRegistry, send_timeout: float = 0.05) -> None:
        self.registry = registry
        self.send_timeout = send_timeout

    def send_to(self, connection_id: str, event: Event) -> DeliveryResult:
        handle = self.registry.get(connection_id)
        if handle is None:
            logger.debug("Dropping %s event for unknown connection %s", event.name, connection_id)
            return DeliveryResult.NOT_FOUND
        return self.deliver(handle, event)

    def deliver(self, handle: ConnectionHandle, event: Event) -> DeliveryResult:
        try:
            handle.send(event, timeout=self.send_timeout)
        except DeliveryFailed as exc:
            logger.warning("%s", exc)
            self.registry.remove(handle, CloseReason.FAILED)
            return DeliveryResult.FAILED
        return DeliveryResult.DELIVERED

    def broadcast(self, event: Event) -> BroadcastReport:
        recipients = self.registry.snapshot()
        delivered = 0
        failed = 0
        for handle in recipients:
            if self.deliver(handle, event) is DeliveryResult.DELIVERED:
                delivered += 1
            else:
                failed += 1
        report = BroadcastReport(delivered=delivered, failed=failed, total=len(recipients))
        logger.debug(
            "Broadcast %s: %d delivered, %d failed", event.name, report.delivered, report.failed
        )
        return report
