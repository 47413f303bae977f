"""Submission helper that backs off briefly while the executor is saturated."""
from __future__ import annotations

from typing import Any, Callable

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import QueueSaturated
from .executor import TaskExecutor
from .tasks import TaskHandle


@retry(
    retry=retry_if_exception_type(QueueSaturated),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
    stop=stop_after_attempt(3),
    reraise=True,
)
def submit_with_backoff(executor: TaskExecutor, work: Callable[..., Any], **kwargs: Any) -> TaskHandle:
    return executor.submit(work, **kwargs)
