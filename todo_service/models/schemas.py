from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TodoCreate(BaseModel):
    text: str | None = None


class TodoUpdate(BaseModel):
    text: str | None = None
    completed: bool | None = None


class TodoOut(BaseModel):
    id: str
    text: str
    completed: bool
    created_at: datetime


class DeletedResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime: float
    active_requests: int
    memory: dict[str, int]


class ProcessStats(BaseModel):
    uptime: float
    memory: dict[str, int]
    cpu: dict[str, float]


class MetricsStats(BaseModel):
    active_requests: int
    todo_operations: dict[str, int]


class MonitoringStatsResponse(BaseModel):
    timestamp: datetime
    process: ProcessStats
    metrics: MetricsStats
