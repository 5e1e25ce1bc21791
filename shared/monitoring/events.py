"""Canonical activity event schema and helpers."""

from __future__ import annotations

import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from shared.monitoring.errors import MalformedEvent
from shared.monitoring.models import Binding, DEFAULT_RANK

EVENT_TYPES = {
    "message",
    "status",
    "typing",
    "relationship",
}

# Events with no partition scope of their own (presence, relationships)
GLOBAL_PARTITION_ID = "__global__"

CONTENT_EXCERPT_LIMIT = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_event_type(value: str) -> str:
    event_type = (value or "").lower().strip()
    if event_type not in EVENT_TYPES:
        raise MalformedEvent(f"Unsupported event_type: {value}")
    return event_type


@dataclass(frozen=True)
class Attribution:
    watcher_id: str
    watcher_name: str
    watcher_rank: str

    @classmethod
    def from_binding(cls, binding: Binding) -> "Attribution":
        return cls(
            watcher_id=binding.watcher_id,
            watcher_name=binding.watcher_name,
            watcher_rank=binding.watcher_rank,
        )

    def label(self) -> str:
        return f"[{self.watcher_rank}] {self.watcher_name}"


@dataclass(frozen=True)
class ActivityEvent:
    event_type: str
    subject_id: str
    partition_id: str
    timestamp_ms: int
    attribution: Attribution
    location_id: Optional[str] = None
    content: Optional[str] = None
    event_id: Optional[str] = None
    subject_name: Optional[str] = None
    partition_name: Optional[str] = None
    location_name: Optional[str] = None
    # Time reported by the event source; ordering uses timestamp_ms
    source_timestamp_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "ActivityEvent":
        if not isinstance(raw, dict):
            raise MalformedEvent("event payload is not an object")
        attribution = raw.get("attribution")
        if not isinstance(attribution, dict):
            raise MalformedEvent("attribution is required")
        return create_activity_event(
            event_type=raw.get("event_type", ""),
            subject_id=raw.get("subject_id", ""),
            partition_id=raw.get("partition_id", ""),
            timestamp_ms=raw.get("timestamp_ms"),
            attribution=Attribution(
                watcher_id=str(attribution.get("watcher_id") or ""),
                watcher_name=str(attribution.get("watcher_name") or "Shadow"),
                watcher_rank=str(attribution.get("watcher_rank") or DEFAULT_RANK),
            ),
            location_id=raw.get("location_id"),
            content=raw.get("content"),
            event_id=raw.get("event_id"),
            subject_name=raw.get("subject_name"),
            partition_name=raw.get("partition_name"),
            location_name=raw.get("location_name"),
            source_timestamp_ms=raw.get("source_timestamp_ms"),
        )


def create_activity_event(
    *,
    event_type: str,
    subject_id: str,
    partition_id: Optional[str],
    attribution: Attribution,
    timestamp_ms: Optional[int] = None,
    location_id: Optional[str] = None,
    content: Optional[str] = None,
    event_id: Optional[str] = None,
    subject_name: Optional[str] = None,
    partition_name: Optional[str] = None,
    location_name: Optional[str] = None,
    source_timestamp_ms: Optional[int] = None,
) -> ActivityEvent:
    normalized_type = normalize_event_type(event_type)
    if not subject_id:
        raise MalformedEvent("subject_id is required")
    if not attribution or not attribution.watcher_id:
        raise MalformedEvent("attribution watcher_id is required")

    if timestamp_ms is None:
        ts = _now_ms()
    else:
        try:
            ts = int(timestamp_ms)
        except (TypeError, ValueError) as e:
            raise MalformedEvent(f"invalid timestamp_ms: {timestamp_ms!r}") from e

    source_ts = None
    if source_timestamp_ms is not None:
        try:
            source_ts = int(source_timestamp_ms)
        except (TypeError, ValueError) as e:
            raise MalformedEvent(f"invalid source_timestamp_ms: {source_timestamp_ms!r}") from e

    excerpt = None
    if content is not None:
        excerpt = str(content)[:CONTENT_EXCERPT_LIMIT]

    return ActivityEvent(
        event_type=normalized_type,
        subject_id=str(subject_id),
        partition_id=str(partition_id) if partition_id else GLOBAL_PARTITION_ID,
        timestamp_ms=ts,
        attribution=attribution,
        location_id=str(location_id) if location_id else None,
        content=excerpt,
        event_id=str(event_id) if event_id else None,
        subject_name=str(subject_name) if subject_name else None,
        partition_name=str(partition_name) if partition_name else None,
        location_name=str(location_name) if location_name else None,
        source_timestamp_ms=source_ts,
    )


__all__ = [
    "EVENT_TYPES",
    "GLOBAL_PARTITION_ID",
    "CONTENT_EXCERPT_LIMIT",
    "Attribution",
    "ActivityEvent",
    "create_activity_event",
    "normalize_event_type",
]
