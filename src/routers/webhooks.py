from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.config import settings
from src.db import DocumentStore, get_store
from src.domain.engagement import normalize_batch
from src.domain.engagement_batches import EngagementCommitError, commit_engagement_events
from src.domain.signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER, check_event_webhook_signature
from src.models.webhooks import EngagementWebhookResponse
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _parse_event_batch(raw_body: bytes) -> list[Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "type": "webhook_payload_invalid",
                "provider": "sendgrid",
                "message": "Invalid JSON payload",
            },
        ) from exc
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return payload
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "type": "webhook_payload_invalid",
            "provider": "sendgrid",
            "message": "Payload must be an event object or an array of events",
        },
    )


@router.post("/sendgrid", response_model=EngagementWebhookResponse)
async def ingest_sendgrid_events(
    request: Request,
    store: DocumentStore = Depends(get_store),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.batches.received", provider_slug="sendgrid")

    signature_check = check_event_webhook_signature(
        raw_body=raw_body,
        signature=request.headers.get(SIGNATURE_HEADER),
        timestamp=request.headers.get(TIMESTAMP_HEADER),
        public_key=settings.sendgrid_webhook_verification_key,
        mode=settings.signature_mode,
        request_id=req_id,
    )
    if not signature_check.accepted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "type": "webhook_signature_invalid",
                "provider": "sendgrid",
                "reason": signature_check.reason,
                "message": "Forbidden - Invalid signature",
            },
        )

    events = _parse_event_batch(raw_body)
    incr_metric("webhook.events.received", value=len(events), provider_slug="sendgrid")
    batch = normalize_batch(events, now=datetime.now(timezone.utc), request_id=req_id)
    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="sendgrid",
        received=batch.received,
        accepted=len(batch.events),
        skipped=batch.skipped_total,
        duplicates=batch.duplicates,
        signature_verified=signature_check.verified,
    )

    persisted = created = 0
    if batch.events:
        try:
            result = commit_engagement_events(
                store,
                batch.events,
                max_operations=settings.engagement_commit_max_operations,
                request_id=req_id,
            )
        except EngagementCommitError as exc:
            incr_metric("webhook.batches.failed", provider_slug="sendgrid")
            log_event(
                "webhook_failed",
                level=logging.ERROR,
                request_id=req_id,
                provider_slug="sendgrid",
                chunk_index=exc.chunk_index,
                committed_events=exc.committed_events,
                error=str(exc.cause),
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "type": "engagement_commit_failed",
                    "provider": "sendgrid",
                    "message": "Internal Server Error",
                },
            ) from exc
        persisted, created = result.persisted, result.created

    incr_metric("webhook.events.persisted", value=persisted, provider_slug="sendgrid")
    log_event(
        "webhook_processed",
        request_id=req_id,
        provider_slug="sendgrid",
        persisted=persisted,
        created=created,
    )
    return EngagementWebhookResponse(
        received=batch.received,
        persisted=persisted,
        created=created,
        replayed=persisted - created,
        skipped=batch.skipped_total,
        duplicates=batch.duplicates,
    )
