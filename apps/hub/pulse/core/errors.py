"""Exception types raised by the pulse core."""
from __future__ import annotations


class PulseError(Exception):
    """Base class for every error raised by the core."""


class DuplicateConnection(PulseError):
    """Raised when registering an id that is already open."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection already open: {connection_id}")


class ConnectionNotFound(PulseError):
    """Raised when looking up an id that is not registered."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection not found: {connection_id}")


class ChannelClosed(PulseError):
    """Raised by a channel that no longer accepts or yields events."""


class ChannelFull(PulseError):
    """Raised when a channel stays full past the send timeout."""


class DeliveryFailed(PulseError):
    """Raised when an event cannot be handed to a connection."""

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Delivery to {connection_id} failed: {reason}")


class QueueSaturated(PulseError):
    """Raised when the executor has no worker or queue slot left."""


class ExecutorShutdown(PulseError):
    """Raised when submitting to an executor that has been shut down."""


class DuplicateTask(PulseError):
    """Raised when a caller-supplied task id is still retained."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task id already in use: {task_id}")


class TaskNotFound(PulseError):
    """Raised when a task id is unknown or has been evicted."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskTimeout(PulseError):
    """Raised when waiting on a task outlasts the caller's timeout."""

    def __init__(self, task_id: str, timeout: float | None) -> None:
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Task {task_id} did not finish within {timeout}s")


class TaskFailed(PulseError):
    """Raised when waiting on a task whose work raised."""

    def __init__(self, task_id: str, error: BaseException | None) -> None:
        self.task_id = task_id
        self.error = error
        super().__init__(f"Task {task_id} failed: {error}")


class TaskCancelled(PulseError):
    """Raised by cooperative work units, and by waits on cancelled tasks."""


class InvalidTransition(PulseError):
    """Raised on a task status change that would move backwards."""
