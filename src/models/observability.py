from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "super_admin_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int
