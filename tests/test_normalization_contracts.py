from datetime import datetime, timedelta, timezone

import pytest

from src.domain.engagement import (
    EventSkipped,
    build_metadata,
    compute_event_id,
    normalize_batch,
    normalize_event,
    normalize_event_type,
    resolve_attribution,
    resolve_event_timestamp,
)


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _event(**overrides):
    event = {
        "email": "editor@example.com",
        "event": "open",
        "timestamp": 1760000000,
        "sg_event_id": "evt-1",
        "sg_message_id": "msg-1",
        "orgId": "org-1",
        "releaseId": "rel-1",
    }
    event.update(overrides)
    return event


def test_event_type_normalization_contract():
    assert normalize_event_type("delivered") == "delivered"
    assert normalize_event_type("open") == "open"
    assert normalize_event_type("click") == "click"
    assert normalize_event_type("bounce") == "bounce"
    assert normalize_event_type("dropped") == "bounce"
    assert normalize_event_type("spamreport") == "spam_report"
    assert normalize_event_type("unsubscribe") == "unsubscribe"
    assert normalize_event_type("processed") is None
    assert normalize_event_type("group_unsubscribe") is None
    assert normalize_event_type("unknown_type_xyz") is None
    assert normalize_event_type(None) is None


def test_attribution_prefers_top_level_then_custom_args():
    assert resolve_attribution({"orgId": "o", "releaseId": "r"}) == ("o", "r")
    assert resolve_attribution({"custom_args": {"orgId": "o2", "releaseId": "r2"}}) == ("o2", "r2")
    assert resolve_attribution(
        {"orgId": "o", "releaseId": "r", "custom_args": {"orgId": "o2", "releaseId": "r2"}}
    ) == ("o", "r")
    # a half-populated top level falls through to custom_args
    assert resolve_attribution({"orgId": "o", "custom_args": {"orgId": "o2", "releaseId": "r2"}}) == ("o2", "r2")


def test_attribution_rejects_missing_or_unsafe_identifiers():
    assert resolve_attribution({}) is None
    assert resolve_attribution({"orgId": "o"}) is None
    assert resolve_attribution({"orgId": "o", "custom_args": {"releaseId": "r"}}) is None
    assert resolve_attribution({"orgId": "", "releaseId": "r"}) is None
    assert resolve_attribution({"orgId": "o/../x", "releaseId": "r"}) is None
    assert resolve_attribution({"orgId": "o", "releaseId": "r", "custom_args": "not-a-dict"}) == ("o", "r")


def test_timestamp_validation_substitutes_ingestion_time():
    assert resolve_event_timestamp(1760000000, NOW) == datetime.fromtimestamp(1760000000, tz=timezone.utc)
    assert resolve_event_timestamp(1760000000.5, NOW).microsecond == 500000
    assert resolve_event_timestamp(-1, NOW) == NOW
    assert resolve_event_timestamp(0, NOW) == NOW
    assert resolve_event_timestamp(float("nan"), NOW) == NOW
    assert resolve_event_timestamp(float("inf"), NOW) == NOW
    assert resolve_event_timestamp(1e20, NOW) == NOW
    assert resolve_event_timestamp("1760000000", NOW) == NOW
    assert resolve_event_timestamp(True, NOW) == NOW
    assert resolve_event_timestamp(None, NOW) == NOW
    far_future = (NOW + timedelta(days=3651)).timestamp()
    assert resolve_event_timestamp(far_future, NOW) == NOW


def test_metadata_only_includes_present_fields():
    assert build_metadata({}) == {}
    assert build_metadata({"useragent": "Mozilla/5.0", "ip": "", "url": None, "reason": "550 mailbox full"}) == {
        "userAgent": "Mozilla/5.0",
        "reason": "550 mailbox full",
    }


def test_event_id_is_deterministic_and_fixed_length():
    first = compute_event_id("evt-1", "msg-1", "open", 1760000000)
    assert first == compute_event_id("evt-1", "msg-1", "open", 1760000000)
    assert len(first) == 32
    assert all(ch in "0123456789abcdef" for ch in first)
    assert first != compute_event_id("evt-2", "msg-1", "open", 1760000000)
    assert first != compute_event_id("evt-1", "msg-1", "click", 1760000000)
    # missing provider ids are empty segments, not errors
    assert len(compute_event_id(None, None, "open", 1760000000)) == 32
    assert compute_event_id(None, "msg-1", "open", 1) != compute_event_id("msg-1", None, "open", 1)


def test_normalize_event_builds_canonical_record():
    event = normalize_event(_event(event="dropped", reason="Bounced Address"), NOW)

    assert event.event_type == "bounce"
    assert event.org_id == "org-1"
    assert event.release_id == "rel-1"
    assert event.recipient_email == "editor@example.com"
    assert event.document_path == f"orgs/org-1/events/{event.id}"
    assert event.release_path == "orgs/org-1/releases/rel-1"
    document = event.to_document()
    assert document["eventType"] == "bounce"
    assert document["metadata"] == {"reason": "Bounced Address"}
    assert None not in document.values()


def test_normalize_event_omits_empty_metadata():
    document = normalize_event(_event(), NOW).to_document()

    assert "metadata" not in document


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ("not-an-event", "not_an_object"),
        (_event(email=None), "missing_email"),
        (_event(email="  "), "missing_email"),
        (_event(event=None), "missing_event_type"),
        (_event(orgId=None), "unresolved_attribution"),
        (_event(event="unknown_type_xyz"), "unsupported_event_type"),
    ],
)
def test_normalize_event_skip_reasons(raw, reason):
    with pytest.raises(EventSkipped) as exc_info:
        normalize_event(raw, NOW)
    assert exc_info.value.reason == reason


def test_normalize_batch_isolates_bad_events_and_collapses_duplicates():
    batch = normalize_batch(
        [
            _event(),
            _event(email=None),
            _event(),
            _event(event="click", sg_event_id="evt-2"),
            _event(event="processed", sg_event_id="evt-3"),
            42,
        ],
        now=NOW,
    )

    assert batch.received == 6
    assert [event.event_type for event in batch.events] == ["open", "click"]
    assert batch.duplicates == 1
    assert batch.skipped == {"missing_email": 1, "unsupported_event_type": 1, "not_an_object": 1}
    assert batch.skipped_total == 3


def test_normalize_batch_keeps_last_occurrence_of_a_duplicate():
    batch = normalize_batch(
        [
            _event(useragent="Agent/1"),
            _event(event="click", sg_event_id="evt-2"),
            _event(useragent="Agent/2"),
        ],
        now=NOW,
    )

    assert [event.event_type for event in batch.events] == ["open", "click"]
    assert batch.events[0].metadata == {"userAgent": "Agent/2"}
    assert batch.duplicates == 1


def test_normalize_batch_keeps_same_event_for_different_orgs():
    anonymous = {"sg_event_id": None, "sg_message_id": None}
    batch = normalize_batch([_event(**anonymous), _event(orgId="org-2", **anonymous)], now=NOW)

    assert batch.events[0].id == batch.events[1].id
    assert [event.document_path for event in batch.events] == [
        f"orgs/org-1/events/{batch.events[0].id}",
        f"orgs/org-2/events/{batch.events[0].id}",
    ]
    assert batch.duplicates == 0


def test_normalize_batch_of_nothing_is_empty():
    batch = normalize_batch([], now=NOW)

    assert batch.received == 0
    assert batch.events == []
    assert batch.skipped_total == 0
