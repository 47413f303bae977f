"""Tests for environment-driven settings."""
from __future__ import annotations

import pytest

from apps.hub.pulse.core.hub import Hub
from apps.hub.pulse.util.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PULSE_CORE_WORKERS",
        "PULSE_MAX_WORKERS",
        "PULSE_QUEUE_CAPACITY",
        "PULSE_OVERFLOW_POLICY",
        "PULSE_SEND_TIMEOUT",
        "PULSE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()
    assert settings == Settings()
    assert settings.core_workers == 5
    assert settings.max_workers == 10
    assert settings.queue_capacity == 100
    assert settings.overflow_policy == "caller_runs"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_CORE_WORKERS", "3")
    monkeypatch.setenv("PULSE_MAX_WORKERS", "6")
    monkeypatch.setenv("PULSE_QUEUE_CAPACITY", "0")
    monkeypatch.setenv("PULSE_OVERFLOW_POLICY", "Reject")
    monkeypatch.setenv("PULSE_SEND_TIMEOUT", "0.2")
    monkeypatch.setenv("PULSE_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.core_workers == 3
    assert settings.max_workers == 6
    assert settings.queue_capacity == 0
    assert settings.overflow_policy == "reject"
    assert settings.send_timeout == pytest.approx(0.2)
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PULSE_CORE_WORKERS", "zero"),
        ("PULSE_CORE_WORKERS", "0"),
        ("PULSE_QUEUE_CAPACITY", "-1"),
        ("PULSE_SEND_TIMEOUT", "-0.5"),
        ("PULSE_OVERFLOW_POLICY", "drop_oldest"),
        ("PULSE_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        Settings.from_env()


def test_max_below_core_is_rejected_by_hub() -> None:
    with pytest.raises(ValueError):
        Hub(Settings(core_workers=4, max_workers=2))


def test_hub_applies_settings() -> None:
    hub = Hub(Settings(core_workers=1, max_workers=3, queue_capacity=7, overflow_policy="reject"))
    assert hub.executor.core_size == 1
    assert hub.executor.max_size == 3
    assert hub.executor.queue_capacity == 7
    assert hub.executor.overflow.value == "reject"
    assert hub.publisher.stream_timeout == hub.settings.progress_timeout
