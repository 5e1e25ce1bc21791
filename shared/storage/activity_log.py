"""
Partitioned activity log.

Stores ActivityEvents per partition (one per grouping context, plus
__global__ for events without one) under two caps:

- per-partition cap: oldest entry evicted first
- global cap: the largest partition has its head trimmed

Entries older than the configured max age are purged periodically.

Persistence is incremental: only partitions mutated since the last flush
are written, each under its own key, followed by the partition index and
the lifetime detection counter. A failed write leaves the key dirty for
the next flush.

`version` increases on every mutation so pollers can skip re-reading an
unchanged log.
"""

from __future__ import annotations

import time
from bisect import bisect_left, insort
from collections import Counter
from dataclasses import dataclass, field
from itertools import chain
from typing import Callable, Dict, Iterable, List, Optional, Set

from shared.config.senses import FeedConfig
from shared.logging.logger import get_logger
from shared.monitoring.errors import MalformedEvent, PersistenceFailure
from shared.monitoring.events import ActivityEvent
from shared.storage.persistence import PersistenceStore

log = get_logger("shared.storage.activity_log")

PARTITION_KEY_PREFIX = "feed_"
INDEX_KEY = "feed_partition_ids"
DETECTIONS_KEY = "total_detections"
LEGACY_FEEDS_KEY = "feeds"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _timestamp(event: ActivityEvent) -> int:
    return event.timestamp_ms


def partition_key(partition_id: str) -> str:
    return f"{PARTITION_KEY_PREFIX}{partition_id}"


@dataclass(frozen=True)
class UnseenReport:
    """Entries that arrived in a partition while it was not the active context."""

    partition_id: str
    count: int
    by_watcher: Dict[str, int] = field(default_factory=dict)
    partition_name: Optional[str] = None

    @property
    def watcher_count(self) -> int:
        return len(self.by_watcher)

    def summary(self) -> str:
        where = self.partition_name or self.partition_id
        noun = "signal" if self.count == 1 else "signals"
        who = "shadow" if self.watcher_count == 1 else "shadows"
        return f"{self.count} {noun} in {where} from {self.watcher_count} {who} while away"


class EventLog:
    def __init__(
        self,
        *,
        store: PersistenceStore,
        namespace: str,
        config: Optional[FeedConfig] = None,
        is_monitored: Optional[Callable[[str], bool]] = None,
    ):
        self._store = store
        self._namespace = namespace
        self._config = config or FeedConfig()
        self._is_monitored = is_monitored or (lambda _subject_id: True)

        self._partitions: Dict[str, List[ActivityEvent]] = {}
        self._last_seen: Dict[str, int] = {}
        self._dirty: Set[str] = set()
        self._meta_dirty = False

        self._total = 0
        self._version = 0
        self._total_detections = 0
        self._session_messages = 0
        self._active_partition: Optional[str] = None

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def total_entries(self) -> int:
        return self._total

    @property
    def total_detections(self) -> int:
        return self._total_detections

    @property
    def session_message_count(self) -> int:
        return self._session_messages

    @property
    def dirty_partition_ids(self) -> Set[str]:
        return set(self._dirty)

    @property
    def active_partition_id(self) -> Optional[str]:
        return self._active_partition

    def partition_ids(self) -> List[str]:
        return list(self._partitions)

    def partition(self, partition_id: str) -> List[ActivityEvent]:
        return list(self._partitions.get(partition_id, ()))

    def unseen_count(self, partition_id: str) -> int:
        entries = self._partitions.get(partition_id)
        if not entries:
            return 0
        return max(0, len(entries) - self._last_seen.get(partition_id, 0))

    # ------------------------------------------------------------------
    # Internal mutation helpers (no version bump)
    # ------------------------------------------------------------------

    def _drop_head(self, partition_id: str, count: int) -> int:
        entries = self._partitions.get(partition_id)
        if not entries or count <= 0:
            return 0

        count = min(count, len(entries))
        del entries[:count]
        self._total -= count
        self._dirty.add(partition_id)

        seen = self._last_seen.get(partition_id, 0)
        self._last_seen[partition_id] = max(0, seen - count)

        if not entries:
            self._delete_partition(partition_id)
        return count

    def _delete_partition(self, partition_id: str) -> None:
        self._partitions.pop(partition_id, None)
        self._last_seen.pop(partition_id, None)
        # Written as an empty list on the next flush
        self._dirty.add(partition_id)
        self._meta_dirty = True

    def _enforce_partition_cap(self, partition_id: str) -> int:
        entries = self._partitions.get(partition_id, [])
        overflow = len(entries) - self._config.partition_cap
        if overflow <= 0:
            return 0
        return self._drop_head(partition_id, overflow)

    def _enforce_global_cap(self) -> int:
        removed = 0
        cap = self._config.global_cap
        while self._total > cap and self._partitions:
            largest = max(self._partitions, key=lambda pid: len(self._partitions[pid]))
            length = len(self._partitions[largest])

            keep = max(self._config.trim_floor, length // 2)
            count = length - keep
            if count <= 0:
                # Floor blocks the halving; trim only the excess.
                count = self._total - cap

            trimmed = self._drop_head(largest, count)
            removed += trimmed
            log.info(
                f"Global cap {cap} exceeded; trimmed {trimmed} entr(ies) "
                f"from partition {largest}"
            )
        return removed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ingest(self, event: ActivityEvent) -> bool:
        """
        Add an event to its partition, keeping the partition in timestamp
        order.

        Returns False without mutating anything when the subject is not
        currently monitored.
        """
        if not self._is_monitored(event.subject_id):
            log.debug(f"Ignoring event for unmonitored subject {event.subject_id}")
            return False

        partition_id = event.partition_id
        entries = self._partitions.get(partition_id)
        if entries is None:
            entries = self._partitions[partition_id] = []
            self._last_seen[partition_id] = 0
            self._meta_dirty = True

        # Partitions stay sorted by timestamp_ms; ties keep arrival order
        if entries and event.timestamp_ms < entries[-1].timestamp_ms:
            insort(entries, event, key=_timestamp)
        else:
            entries.append(event)
        self._total += 1
        self._dirty.add(partition_id)

        self._enforce_partition_cap(partition_id)
        self._enforce_global_cap()

        if partition_id == self._active_partition and partition_id in self._partitions:
            self._last_seen[partition_id] = len(self._partitions[partition_id])

        if event.event_type == "message":
            self._total_detections += 1
            self._session_messages += 1
            self._meta_dirty = True

        self._version += 1
        return True

    def purge_older_than(self, cutoff_ms: int) -> int:
        """
        Drop every entry with timestamp < cutoff_ms. Returns the number removed.
        """
        removed = 0
        for partition_id in list(self._partitions):
            entries = self._partitions[partition_id]
            keep_from = bisect_left(entries, cutoff_ms, key=_timestamp)
            if keep_from:
                removed += self._drop_head(partition_id, keep_from)

        if removed:
            self._version += 1
            log.info(
                f"Purged {removed} entr(ies) older than cutoff; "
                f"{self._total} remain in {len(self._partitions)} partition(s)"
            )
        return removed

    def purge_expired(self, now_ms: Optional[int] = None) -> int:
        now = _now_ms() if now_ms is None else now_ms
        return self.purge_older_than(now - self._config.max_age_ms)

    def purge_event_types(self, allowed: Iterable[str]) -> int:
        """
        Drop entries whose event type is not in `allowed`.
        """
        allowed = set(allowed)
        removed = 0

        for partition_id in list(self._partitions):
            entries = self._partitions[partition_id]
            seen = self._last_seen.get(partition_id, 0)

            kept = [e for e in entries if e.event_type in allowed]
            dropped = len(entries) - len(kept)
            if not dropped:
                continue

            dropped_seen = sum(1 for e in entries[:seen] if e.event_type not in allowed)
            self._partitions[partition_id] = kept
            self._last_seen[partition_id] = max(0, seen - dropped_seen)
            self._total -= dropped
            self._dirty.add(partition_id)
            removed += dropped

            if not kept:
                self._delete_partition(partition_id)

        if removed:
            self._version += 1
            log.info(f"Removed {removed} history entr(ies) of disabled event types")
        return removed

    def clear(self) -> None:
        for partition_id in list(self._partitions):
            self._dirty.add(partition_id)
        self._partitions.clear()
        self._last_seen.clear()
        self._total = 0
        self._meta_dirty = True
        self._version += 1
        log.info("Activity log cleared")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _selected(self, exclude_partition_id: Optional[str]) -> List[List[ActivityEvent]]:
        return [
            entries
            for partition_id, entries in self._partitions.items()
            if partition_id != exclude_partition_id
        ]

    def query(self, exclude_partition_id: Optional[str] = None) -> List[ActivityEvent]:
        """
        Every entry outside `exclude_partition_id`, oldest first.

        Walks the whole log; meant for occasional "what did I miss" views.
        """
        merged = list(chain.from_iterable(self._selected(exclude_partition_id)))
        merged.sort(key=lambda e: e.timestamp_ms)
        return merged

    def count(self, exclude_partition_id: Optional[str] = None) -> int:
        return sum(len(entries) for entries in self._selected(exclude_partition_id))

    # ------------------------------------------------------------------
    # Viewing context
    # ------------------------------------------------------------------

    def switch_context(
        self,
        partition_id: Optional[str],
        partition_name: Optional[str] = None,
    ) -> Optional[UnseenReport]:
        if partition_id == self._active_partition:
            return None

        self._active_partition = partition_id
        entries = self._partitions.get(partition_id) if partition_id else None
        if not entries:
            return None

        seen = min(self._last_seen.get(partition_id, 0), len(entries))
        self._last_seen[partition_id] = len(entries)

        unseen = entries[seen:]
        if not unseen:
            return None

        by_watcher = Counter(e.attribution.label() for e in unseen)
        return UnseenReport(
            partition_id=partition_id,
            count=len(unseen),
            by_watcher=dict(by_watcher),
            partition_name=partition_name or unseen[-1].partition_name,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> bool:
        """
        Persist dirty partitions, then the index and counters.

        Returns True when something was written and every write succeeded.
        Failed keys stay dirty and are retried by the next flush.
        """
        if not self._dirty and not self._meta_dirty:
            return False

        ok = True
        written = 0

        for partition_id in sorted(self._dirty):
            payload = [e.to_dict() for e in self._partitions.get(partition_id, ())]
            try:
                self._store.save(self._namespace, partition_key(partition_id), payload)
            except PersistenceFailure as e:
                log.error(f"PERSISTENCE_FAILURE partition={partition_id}: {e}")
                ok = False
                continue
            self._dirty.discard(partition_id)
            written += 1

        try:
            self._store.save(self._namespace, INDEX_KEY, sorted(self._partitions))
            self._store.save(self._namespace, DETECTIONS_KEY, self._total_detections)
            self._meta_dirty = False
        except PersistenceFailure as e:
            log.error(f"PERSISTENCE_FAILURE index/counters: {e}")
            self._meta_dirty = True
            ok = False

        log.debug(
            f"Flushed {written} partition(s); total={self._total} "
            f"partitions={len(self._partitions)} pending={len(self._dirty)}"
        )
        return ok

    def _load_key(self, key: str):
        try:
            return self._store.load(self._namespace, key)
        except PersistenceFailure as e:
            log.warning(f"Skipping unreadable key {key}: {e}")
            return None

    def _parse_entries(self, partition_id: str, raw) -> List[ActivityEvent]:
        if not isinstance(raw, list):
            log.warning(f"Partition {partition_id} is not a list; skipping")
            return []

        entries: List[ActivityEvent] = []
        dropped = 0
        for item in raw:
            try:
                entries.append(ActivityEvent.from_dict(item))
            except MalformedEvent:
                dropped += 1
        if dropped:
            log.warning(f"Dropped {dropped} malformed entr(ies) from partition {partition_id}")

        entries.sort(key=lambda e: e.timestamp_ms)
        return entries

    def _reset(self) -> None:
        self._partitions.clear()
        self._last_seen.clear()
        self._dirty.clear()
        self._meta_dirty = False
        self._total = 0
        self._total_detections = 0

    def load(self) -> None:
        """
        Restore state from the store.

        Partitions load one by one from the index; a missing or corrupt
        partition is skipped. Without an index, the legacy single-key
        layout is read and immediately re-persisted in the new layout.
        Loaded history counts as already seen.
        """
        self._reset()
        migrated = False

        index = self._load_key(INDEX_KEY)
        if isinstance(index, list):
            for partition_id in index:
                partition_id = str(partition_id)
                raw = self._load_key(partition_key(partition_id))
                if raw is None:
                    log.warning(f"Partition {partition_id} listed in index but missing")
                    self._meta_dirty = True
                    continue
                entries = self._parse_entries(partition_id, raw)
                if entries:
                    self._partitions[partition_id] = entries
        else:
            if index is not None:
                log.warning("Partition index is not a list; trying legacy layout")
            legacy = self._load_key(LEGACY_FEEDS_KEY)
            if isinstance(legacy, dict):
                for partition_id, raw in legacy.items():
                    entries = self._parse_entries(str(partition_id), raw)
                    if entries:
                        self._partitions[str(partition_id)] = entries
                        self._dirty.add(str(partition_id))
                migrated = bool(self._partitions)

        detections = self._load_key(DETECTIONS_KEY)
        if isinstance(detections, int) and detections >= 0:
            self._total_detections = detections

        self._total = sum(len(entries) for entries in self._partitions.values())
        for partition_id in list(self._partitions):
            self._enforce_partition_cap(partition_id)
        self._enforce_global_cap()

        for partition_id, entries in self._partitions.items():
            self._last_seen[partition_id] = len(entries)

        self._version += 1
        log.info(
            f"Loaded activity log: partitions={len(self._partitions)} "
            f"entries={self._total} detections={self._total_detections}"
        )

        if migrated:
            self._meta_dirty = True
            log.info("Migrating legacy feed layout to per-partition keys")
            self.flush()


__all__ = [
    "EventLog",
    "UnseenReport",
    "partition_key",
    "INDEX_KEY",
    "DETECTIONS_KEY",
    "LEGACY_FEEDS_KEY",
]
