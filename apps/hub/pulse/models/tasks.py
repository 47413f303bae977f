"""Pydantic models for the task APIs."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TaskRequest(BaseModel):
    task_name: str = Field("DefaultTask", alias="taskName")
    duration_seconds: float = Field(2.0, ge=0, le=300, alias="durationSeconds")

    class Config:
        populate_by_name = True


class TaskSubmitted(BaseModel):
    status: str = "submitted"
    task_id: str = Field(serialization_alias="taskId")
    message: str


class TaskCompleted(BaseModel):
    status: str
    task_id: str = Field(serialization_alias="taskId")
    task_name: Optional[str] = Field(None, serialization_alias="taskName")
    result: Any = None
    message: Optional[str] = None
    total_time_ms: int = Field(0, serialization_alias="totalTimeMs")


class BatchCompleted(BaseModel):
    status: str
    task_id: str = Field(serialization_alias="taskId")
    task_count: int = Field(serialization_alias="taskCount")
    results: list[dict[str, Any]]
    total_time_ms: int = Field(0, serialization_alias="totalTimeMs")


class CancelResponse(BaseModel):
    task_id: str = Field(serialization_alias="taskId")
    cancelled: bool
    status: str
