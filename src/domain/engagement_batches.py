from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Sequence

from src.db import AtomicUnit, DocumentStore
from src.domain.engagement import EngagementEvent
from src.observability import incr_metric, log_event


# event type -> release counter field
COUNTER_FIELDS: dict[str, str] = {
    "open": "opens",
    "click": "clicks",
}


class EngagementCommitError(Exception):
    def __init__(self, *, chunk_index: int, committed_events: int, cause: Exception):
        super().__init__(f"chunk {chunk_index} failed to commit: {cause}")
        self.chunk_index = chunk_index
        self.committed_events = committed_events
        self.cause = cause


@dataclass
class ChunkResult:
    persisted: int
    created: int
    missing_releases: list[str] = field(default_factory=list)

    @property
    def replayed(self) -> int:
        return self.persisted - self.created


@dataclass
class CommitResult:
    persisted: int = 0
    created: int = 0
    chunks: int = 0

    @property
    def replayed(self) -> int:
        return self.persisted - self.created


def events_per_chunk(max_operations: int) -> int:
    # an event costs one document write plus at most one counter write
    return max(1, max_operations // 2)


def chunk_events(events: Sequence[EngagementEvent], max_operations: int) -> list[list[EngagementEvent]]:
    size = events_per_chunk(max_operations)
    return [list(events[start:start + size]) for start in range(0, len(events), size)]


def counter_increments(events: Sequence[EngagementEvent]) -> dict[str, dict[str, int]]:
    increments: dict[str, dict[str, int]] = defaultdict(dict)
    for event in events:
        field_name = COUNTER_FIELDS.get(event.event_type)
        if not field_name:
            continue
        counters = increments[event.release_path]
        counters[field_name] = counters.get(field_name, 0) + 1
    return dict(increments)


def _stage_chunk(unit: AtomicUnit, chunk: Sequence[EngagementEvent]) -> ChunkResult:
    release_paths = sorted({event.release_path for event in chunk if event.event_type in COUNTER_FIELDS})
    found = unit.existing([event.document_path for event in chunk] + release_paths)
    # stored records are never rewritten, so a replay leaves them as first written
    first_seen = [event for event in chunk if event.document_path not in found]
    for event in first_seen:
        unit.set(event.document_path, event.to_document())
    missing_releases = []
    for release_path, counters in counter_increments(first_seen).items():
        if release_path in found:
            unit.increment(release_path, counters)
        else:
            missing_releases.append(release_path)
    return ChunkResult(persisted=len(chunk), created=len(first_seen), missing_releases=missing_releases)


def commit_engagement_events(
    store: DocumentStore,
    events: Sequence[EngagementEvent],
    *,
    max_operations: int | None = None,
    request_id: str | None = None,
) -> CommitResult:
    """Store first-seen events and bump release counters, one atomic unit per chunk.

    Each unit reads its event and release documents before writing. Events
    already stored are left as they are, and counters only move for events
    written by this unit, so re-delivering a batch converges. Counters are
    never written to a release document that does not exist.

    Chunks commit in order. When one fails, earlier chunks stay committed and
    EngagementCommitError is raised.
    """
    ceiling = min(max_operations or store.max_operations_per_commit, store.max_operations_per_commit)
    result = CommitResult()
    for chunk_index, chunk in enumerate(chunk_events(events, ceiling)):
        try:
            chunk_result = store.run_atomic(lambda unit, chunk=chunk: _stage_chunk(unit, chunk))
        except Exception as exc:
            incr_metric("webhook.commit.chunk_failed", provider_slug="sendgrid")
            log_event(
                "engagement_chunk_commit_failed",
                level=logging.ERROR,
                request_id=request_id,
                provider_slug="sendgrid",
                chunk_index=chunk_index,
                chunk_size=len(chunk),
                committed_events=result.persisted,
                error=str(exc),
            )
            raise EngagementCommitError(
                chunk_index=chunk_index,
                committed_events=result.persisted,
                cause=exc,
            ) from exc

        result.chunks += 1
        result.persisted += chunk_result.persisted
        result.created += chunk_result.created
        incr_metric("webhook.commit.chunk_committed", provider_slug="sendgrid")
        log_event(
            "engagement_chunk_committed",
            request_id=request_id,
            provider_slug="sendgrid",
            chunk_index=chunk_index,
            persisted=chunk_result.persisted,
            created=chunk_result.created,
            replayed=chunk_result.replayed,
        )
        for release_path in chunk_result.missing_releases:
            incr_metric("webhook.counters.release_missing", provider_slug="sendgrid")
            log_event(
                "engagement_counter_release_missing",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug="sendgrid",
                chunk_index=chunk_index,
                release_path=release_path,
            )
    return result
