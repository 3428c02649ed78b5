from __future__ import annotations

import hashlib
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from src.observability import incr_metric, log_event


EngagementEventType = Literal["delivered", "open", "click", "bounce", "spam_report", "unsubscribe"]

ENGAGEMENT_EVENT_TYPES: tuple[str, ...] = ("delivered", "open", "click", "bounce", "spam_report", "unsubscribe")

_PROVIDER_EVENT_TYPES: dict[str, EngagementEventType] = {
    "delivered": "delivered",
    "open": "open",
    "click": "click",
    "bounce": "bounce",
    "dropped": "bounce",
    "spamreport": "spam_report",
    "unsubscribe": "unsubscribe",
}

# provider field -> stored metadata key
_METADATA_FIELDS: tuple[tuple[str, str], ...] = (
    ("useragent", "userAgent"),
    ("ip", "ip"),
    ("url", "url"),
    ("reason", "reason"),
)

EARLIEST_VALID_TIMESTAMP = datetime(2000, 1, 1, tzinfo=timezone.utc)
MAX_FUTURE_SKEW = timedelta(days=3650)
EVENT_ID_LENGTH = 32


class EventSkipped(Exception):
    """An inbound event that cannot be attributed or stored; dropped on its own."""

    def __init__(self, reason: str, *, provider_event: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.provider_event = provider_event


@dataclass(frozen=True)
class EngagementEvent:
    id: str
    org_id: str
    release_id: str
    recipient_email: str
    event_type: EngagementEventType
    timestamp: datetime
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def document_path(self) -> str:
        return f"orgs/{self.org_id}/events/{self.id}"

    @property
    def release_path(self) -> str:
        return f"orgs/{self.org_id}/releases/{self.release_id}"

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "id": self.id,
            "orgId": self.org_id,
            "releaseId": self.release_id,
            "recipientEmail": self.recipient_email,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            document["metadata"] = dict(self.metadata)
        return document


@dataclass
class NormalizedBatch:
    received: int
    events: list[EngagementEvent]
    skipped: Counter[str] = field(default_factory=Counter)
    duplicates: int = 0

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def normalize_event_type(value: Any) -> EngagementEventType | None:
    return _PROVIDER_EVENT_TYPES.get(_text(value).lower())


def _valid_identifier(value: Any) -> str | None:
    text = _text(value)
    # identifiers become document path segments
    if not text or "/" in text or text in {".", ".."}:
        return None
    return text


def resolve_attribution(event: dict[str, Any]) -> tuple[str, str] | None:
    """Find (orgId, releaseId) at the top level first, then under custom_args."""
    candidates = [event]
    custom_args = event.get("custom_args")
    if isinstance(custom_args, dict):
        candidates.append(custom_args)
    for source in candidates:
        org_id = _valid_identifier(source.get("orgId"))
        release_id = _valid_identifier(source.get("releaseId"))
        if org_id and release_id:
            return org_id, release_id
    return None


def resolve_event_timestamp(raw: Any, now: datetime) -> datetime:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return now
    if not math.isfinite(raw):
        return now
    try:
        parsed = datetime.fromtimestamp(raw, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return now
    if parsed < EARLIEST_VALID_TIMESTAMP or parsed > now + MAX_FUTURE_SKEW:
        return now
    return parsed


def build_metadata(event: dict[str, Any]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for source_key, target_key in _METADATA_FIELDS:
        value = _text(event.get(source_key))
        if value:
            metadata[target_key] = value
    return metadata


def compute_event_id(
    sg_event_id: Any,
    sg_message_id: Any,
    event: Any,
    timestamp: Any,
) -> str:
    """Stable storage key for one provider event.

    Key material is ``sg_event_id|sg_message_id|event|timestamp`` with absent
    fields as empty segments. Two events lacking both provider ids that share
    type and second collide; within one batch the later occurrence is kept.
    """
    segments = [_text(sg_event_id), _text(sg_message_id), _text(event), _text(timestamp)]
    digest = hashlib.sha256("|".join(segments).encode("utf-8")).hexdigest()
    return digest[:EVENT_ID_LENGTH]


def normalize_event(event: Any, now: datetime) -> EngagementEvent:
    if not isinstance(event, dict):
        raise EventSkipped("not_an_object")
    provider_event = _text(event.get("event")) or None
    recipient_email = _text(event.get("email"))
    if not recipient_email:
        raise EventSkipped("missing_email", provider_event=provider_event)
    if not provider_event:
        raise EventSkipped("missing_event_type")
    attribution = resolve_attribution(event)
    if attribution is None:
        raise EventSkipped("unresolved_attribution", provider_event=provider_event)
    event_type = normalize_event_type(provider_event)
    if event_type is None:
        raise EventSkipped("unsupported_event_type", provider_event=provider_event)

    org_id, release_id = attribution
    return EngagementEvent(
        id=compute_event_id(
            event.get("sg_event_id"),
            event.get("sg_message_id"),
            event.get("event"),
            event.get("timestamp"),
        ),
        org_id=org_id,
        release_id=release_id,
        recipient_email=recipient_email,
        event_type=event_type,
        timestamp=resolve_event_timestamp(event.get("timestamp"), now),
        metadata=build_metadata(event),
    )


def normalize_batch(
    payload: list[Any],
    *,
    now: datetime | None = None,
    request_id: str | None = None,
) -> NormalizedBatch:
    """Normalize every event on its own; a bad event never affects its siblings."""
    now = now or datetime.now(timezone.utc)
    batch = NormalizedBatch(received=len(payload), events=[])
    by_path: dict[str, EngagementEvent] = {}
    for index, raw_event in enumerate(payload):
        try:
            normalized = normalize_event(raw_event, now)
        except EventSkipped as exc:
            batch.skipped[exc.reason] += 1
            incr_metric("webhook.events.skipped", provider_slug="sendgrid", reason=exc.reason)
            log_event(
                "webhook_event_skipped",
                level=logging.DEBUG if exc.reason == "unsupported_event_type" else logging.INFO,
                request_id=request_id,
                provider_slug="sendgrid",
                index=index,
                reason=exc.reason,
                provider_event=exc.provider_event,
            )
            continue
        except Exception as exc:
            batch.skipped["normalization_error"] += 1
            incr_metric("webhook.events.skipped", provider_slug="sendgrid", reason="normalization_error")
            log_event(
                "webhook_event_normalization_failed",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug="sendgrid",
                index=index,
                error=str(exc),
            )
            continue

        if normalized.document_path in by_path:
            batch.duplicates += 1
            incr_metric("webhook.events.duplicate_in_batch", provider_slug="sendgrid")
        # later occurrences replace earlier ones, matching what storage would hold
        by_path[normalized.document_path] = normalized
    batch.events = list(by_path.values())
    return batch
