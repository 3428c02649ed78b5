from __future__ import annotations

from fastapi import APIRouter, Depends

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.db import DocumentStore, get_store
from src.models.observability import (
    MetricsSnapshotFlushRequest,
    MetricsSnapshotFlushResponse,
    MetricsSnapshotRecord,
)
from src.observability import METRICS_SNAPSHOT_COLLECTION, metrics_snapshot, persist_metrics_snapshot


router = APIRouter(prefix="/api/super-admin", tags=["super-admin"])


@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
    store: DocumentStore = Depends(get_store),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    rows = store.query(
        METRICS_SNAPSHOT_COLLECTION,
        order_by="createdAt",
        descending=True,
        limit=bounded_offset + bounded_limit,
    )
    return [
        MetricsSnapshotRecord(
            id=row["id"],
            source=row.get("source", ""),
            request_id=row.get("requestId"),
            counters=row.get("counters") or {},
            created_at=row["createdAt"],
        )
        for row in rows[bounded_offset:bounded_offset + bounded_limit]
    ]


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
    store: DocumentStore = Depends(get_store),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        store=store,
        source=data.source,
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
