"""Runtime settings read from ``PULSE_*`` environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True)
class Settings:
    """Tunables for the worker pool, connections and logging."""

    core_workers: int = 5
    max_workers: int = 10
    queue_capacity: int = 100
    overflow_policy: str = "caller_runs"
    worker_keep_alive: float = 60.0
    result_ttl: float = 600.0
    max_retained_tasks: int = 1000
    connection_queue_size: int = 100
    send_timeout: float = 0.05
    progress_timeout: float = 300.0
    attach_timeout: float = 30.0
    reaper_interval: float = 1.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            core_workers=_env_int("PULSE_CORE_WORKERS", default=5, minimum=1),
            max_workers=_env_int("PULSE_MAX_WORKERS", default=10, minimum=1),
            queue_capacity=_env_int("PULSE_QUEUE_CAPACITY", default=100, minimum=0),
            overflow_policy=_env_choice(
                "PULSE_OVERFLOW_POLICY", default="caller_runs", choices={"caller_runs", "reject"}
            ),
            worker_keep_alive=_env_float("PULSE_WORKER_KEEP_ALIVE", default=60.0),
            result_ttl=_env_float("PULSE_RESULT_TTL", default=600.0),
            max_retained_tasks=_env_int("PULSE_MAX_RETAINED_TASKS", default=1000, minimum=1),
            connection_queue_size=_env_int("PULSE_CONNECTION_QUEUE_SIZE", default=100, minimum=1),
            send_timeout=_env_float("PULSE_SEND_TIMEOUT", default=0.05),
            progress_timeout=_env_float("PULSE_PROGRESS_TIMEOUT", default=300.0),
            attach_timeout=_env_float("PULSE_ATTACH_TIMEOUT", default=30.0),
            reaper_interval=_env_float("PULSE_REAPER_INTERVAL", default=1.0),
            log_level=_env_choice(
                "PULSE_LOG_LEVEL",
                default="INFO",
                choices={"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
                upper=True,
            ),
        )

    def validate(self) -> None:
        if self.max_workers < self.core_workers:
            raise ValueError("PULSE_MAX_WORKERS must be >= PULSE_CORE_WORKERS")


def _env_int(name: str, *, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _env_choice(name: str, *, default: str, choices: set[str], upper: bool = False) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().upper() if upper else raw.strip().lower().replace("-", "_")
    if value not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got {raw!r}")
    return value
