from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class EngagementWebhookResponse(BaseModel):
    status: Literal["ok"] = "ok"
    received: int
    persisted: int
    created: int
    replayed: int
    skipped: int
    duplicates: int
