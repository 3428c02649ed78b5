from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ClickedUrlItem(BaseModel):
    url: str
    count: int


class ReleaseEngagementSummaryResponse(BaseModel):
    release_id: str
    delivered: int
    opens: int
    unique_opens: int
    clicks: int
    unique_clicks: int
    bounces: int
    spam_reports: int
    unsubscribes: int
    open_rate: float
    click_rate: float
    counter_opens: int
    counter_clicks: int
    clicked_urls: list[ClickedUrlItem]
    events_total: int
    last_event_at: datetime | None = None


class EngagementEventListItem(BaseModel):
    id: str
    release_id: str
    recipient_email: str
    event_type: str
    timestamp: datetime
    metadata: dict[str, str] = {}
