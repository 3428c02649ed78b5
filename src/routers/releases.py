from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.auth import AuthContext, get_current_auth, has_permission
from src.auth.permissions import ANALYTICS_READ, RELEASES_READ
from src.db import DocumentStore, get_store
from src.domain.engagement import ENGAGEMENT_EVENT_TYPES
from src.models.analytics import (
    ClickedUrlItem,
    EngagementEventListItem,
    ReleaseEngagementSummaryResponse,
)


router = APIRouter(prefix="/api/releases", tags=["releases"])


def _require(auth: AuthContext, permission_key: str) -> None:
    if not has_permission(auth, permission_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Permission required: {permission_key}")


def _get_release_for_auth(store: DocumentStore, auth: AuthContext, release_id: str) -> dict[str, Any]:
    if "/" in release_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Release not found")
    release = store.get(f"orgs/{auth.org_id}/releases/{release_id}")
    if not release:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Release not found")
    return release


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


def _summarize(release_id: str, release: dict[str, Any], events: list[dict[str, Any]]) -> ReleaseEngagementSummaryResponse:
    by_type: Counter[str] = Counter(event.get("eventType") for event in events)
    openers = {event.get("recipientEmail") for event in events if event.get("eventType") == "open"}
    clickers = {event.get("recipientEmail") for event in events if event.get("eventType") == "click"}
    url_counts: Counter[str] = Counter(
        (event.get("metadata") or {}).get("url")
        for event in events
        if event.get("eventType") == "click" and (event.get("metadata") or {}).get("url")
    )
    timestamps = [event["timestamp"] for event in events if isinstance(event.get("timestamp"), datetime)]

    return ReleaseEngagementSummaryResponse(
        release_id=release_id,
        delivered=by_type["delivered"],
        opens=by_type["open"],
        unique_opens=len(openers),
        clicks=by_type["click"],
        unique_clicks=len(clickers),
        bounces=by_type["bounce"],
        spam_reports=by_type["spam_report"],
        unsubscribes=by_type["unsubscribe"],
        open_rate=_rate(len(openers), by_type["delivered"]),
        click_rate=_rate(len(clickers), len(openers)),
        counter_opens=int(release.get("opens") or 0),
        counter_clicks=int(release.get("clicks") or 0),
        clicked_urls=[
            ClickedUrlItem(url=url, count=count)
            for url, count in sorted(url_counts.items(), key=lambda item: (-item[1], item[0]))
        ],
        events_total=len(events),
        last_event_at=max(timestamps) if timestamps else None,
    )


@router.get("/{release_id}/engagement", response_model=ReleaseEngagementSummaryResponse)
async def get_release_engagement(
    release_id: str,
    auth: AuthContext = Depends(get_current_auth),
    store: DocumentStore = Depends(get_store),
):
    _require(auth, ANALYTICS_READ)
    release = _get_release_for_auth(store, auth, release_id)
    events = store.query(
        f"orgs/{auth.org_id}/events",
        filters=[("releaseId", "==", release_id)],
    )
    return _summarize(release_id, release, events)


@router.get("/{release_id}/events", response_model=list[EngagementEventListItem])
async def list_release_events(
    release_id: str,
    event_type: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    auth: AuthContext = Depends(get_current_auth),
    store: DocumentStore = Depends(get_store),
):
    _require(auth, RELEASES_READ)
    _get_release_for_auth(store, auth, release_id)
    if event_type is not None and event_type not in ENGAGEMENT_EVENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"event_type must be one of: {', '.join(ENGAGEMENT_EVENT_TYPES)}",
        )
    filters: list[tuple[str, str, Any]] = [("releaseId", "==", release_id)]
    if event_type:
        filters.append(("eventType", "==", event_type))
    rows = store.query(
        f"orgs/{auth.org_id}/events",
        filters=filters,
        order_by="timestamp",
        descending=True,
        limit=limit,
    )
    return [
        EngagementEventListItem(
            id=row["id"],
            release_id=row.get("releaseId", release_id),
            recipient_email=row.get("recipientEmail", ""),
            event_type=row.get("eventType", ""),
            timestamp=row["timestamp"],
            metadata=row.get("metadata") or {},
        )
        for row in rows
    ]
