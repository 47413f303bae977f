"""Immutable event envelope pushed to connections."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Mapping

CONNECTED = "connected"
MESSAGE = "message"
BROADCAST = "broadcast"
STARTED = "started"
PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"
COUNT = "count"
FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class Event:
    """Named payload with the time it was produced."""

    name: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Event name must not be empty")
        # Copy so later mutation of the caller's dict cannot leak in.
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @classmethod
    def create(cls, name: str, payload: Mapping[str, Any] | None = None) -> "Event":
        return cls(name, payload or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }
