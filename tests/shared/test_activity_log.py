from pathlib import Path

import pytest

from shared.config.senses import FeedConfig
from shared.monitoring.errors import PersistenceFailure
from shared.monitoring.events import Attribution, create_activity_event
from shared.storage.activity_log import (
    DETECTIONS_KEY,
    INDEX_KEY,
    LEGACY_FEEDS_KEY,
    EventLog,
)
from shared.storage.persistence import InMemoryStore, JsonFileStore

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000

IGRIS = Attribution(watcher_id="igris", watcher_name="Igris", watcher_rank="Monarch")
BERU = Attribution(watcher_id="beru", watcher_name="Beru", watcher_rank="Monarch+")


def _event(partition, ts, *, subject="s1", event_type="message", attribution=IGRIS):
    return create_activity_event(
        event_type=event_type,
        subject_id=subject,
        partition_id=partition,
        attribution=attribution,
        timestamp_ms=ts,
        content=f"{partition}-{ts}",
    )


def _log(store=None, is_monitored=None, **config) -> EventLog:
    return EventLog(
        store=store or InMemoryStore(),
        namespace="test",
        config=FeedConfig(**config),
        is_monitored=is_monitored,
    )


class RecordingStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.saved_keys = []
        self.failing_keys = set()

    def save(self, namespace, key, value):
        if key in self.failing_keys:
            raise PersistenceFailure(f"disk full writing {key}")
        self.saved_keys.append(key)
        super().save(namespace, key, value)


# ----------------------------------------------------------------------
# Caps
# ----------------------------------------------------------------------

def test_partition_cap_evicts_oldest():
    log = _log(partition_cap=5)
    for ts in range(1, 7):
        log.ingest(_event("X", ts))

    entries = log.partition("X")
    assert len(entries) == 5
    assert [e.timestamp_ms for e in entries] == [2, 3, 4, 5, 6]
    assert log.total_entries == 5


def test_global_cap_trims_largest_partition():
    log = _log(partition_cap=100, global_cap=20, trim_floor=1)
    ts = 0
    for partition in ("A", "B", "C", "D"):
        for _ in range(5):
            ts += 1
            log.ingest(_event(partition, ts))
    assert log.total_entries == 20

    log.ingest(_event("A", 1000))

    assert len(log.partition("A")) == 3
    assert log.partition("A")[-1].timestamp_ms == 1000
    assert log.total_entries == 18
    assert log.total_entries <= 20
    for partition in ("B", "C", "D"):
        assert len(log.partition(partition)) == 5


def test_global_cap_with_high_floor_trims_only_excess():
    log = _log(partition_cap=100, global_cap=20, trim_floor=100)
    ts = 0
    for partition in ("A", "B", "C", "D"):
        for _ in range(5):
            ts += 1
            log.ingest(_event(partition, ts))

    log.ingest(_event("A", 1000))

    assert log.total_entries == 20
    assert len(log.partition("A")) == 5
    assert log.partition("A")[0].timestamp_ms == 2


def test_caps_hold_after_many_ingests():
    log = _log(partition_cap=7, global_cap=15, trim_floor=2)
    for ts in range(200):
        log.ingest(_event(f"P{ts % 4}", ts))
        assert log.total_entries <= 15
        assert all(len(log.partition(p)) <= 7 for p in log.partition_ids())
        assert log.total_entries == log.count()


# ----------------------------------------------------------------------
# Ingest / query
# ----------------------------------------------------------------------

def test_ingest_rejects_unmonitored_subject():
    log = _log(is_monitored=lambda subject_id: subject_id == "s1")

    assert log.ingest(_event("A", 1, subject="s2")) is False
    assert log.version == 0
    assert log.total_entries == 0
    assert log.dirty_partition_ids == set()

    assert log.ingest(_event("A", 2, subject="s1")) is True
    assert log.version == 1


def test_version_bumps_on_mutation_only():
    log = _log()
    log.ingest(_event("A", 1))
    log.ingest(_event("B", 2))
    assert log.version == 2

    log.query()
    log.count(exclude_partition_id="A")
    log.partition("A")
    assert log.version == 2

    log.purge_older_than(2)
    assert log.version == 3


def test_query_merges_partitions_by_timestamp():
    log = _log()
    log.ingest(_event("A", 10))
    log.ingest(_event("B", 5))
    log.ingest(_event("A", 20))
    log.ingest(_event("C", 15))

    assert [e.timestamp_ms for e in log.query()] == [5, 10, 15, 20]
    assert [e.timestamp_ms for e in log.query(exclude_partition_id="A")] == [5, 15]
    assert log.count() == 4
    assert log.count(exclude_partition_id="A") == 2


def test_message_events_count_as_detections():
    log = _log()
    log.ingest(_event("A", 1))
    log.ingest(_event("A", 2, event_type="typing"))
    log.ingest(_event(None, 3, event_type="status"))

    assert log.total_detections == 1
    assert log.session_message_count == 1
    assert "__global__" in log.partition_ids()


# ----------------------------------------------------------------------
# Purge
# ----------------------------------------------------------------------

def test_purge_older_than_keeps_recent_entries():
    now = 10 * DAY_MS
    log = _log()
    log.ingest(_event("X", now - 4 * DAY_MS))
    log.ingest(_event("X", now - 2 * DAY_MS))
    log.ingest(_event("X", now - HOUR_MS))

    removed = log.purge_older_than(now - 3 * DAY_MS)

    assert removed == 1
    assert [e.timestamp_ms for e in log.partition("X")] == [now - 2 * DAY_MS, now - HOUR_MS]

    version = log.version
    assert log.purge_older_than(now - 3 * DAY_MS) == 0
    assert log.version == version


def test_purge_deletes_emptied_partitions():
    log = _log()
    log.ingest(_event("old", 1))
    log.ingest(_event("new", 100))

    assert log.purge_older_than(50) == 1
    assert log.partition_ids() == ["new"]
    assert "old" in log.dirty_partition_ids
    assert log.total_entries == 1


def test_purge_expired_uses_max_age():
    log = _log(max_age_hours=72)
    now = 10 * DAY_MS
    log.ingest(_event("X", now - 4 * DAY_MS))
    log.ingest(_event("X", now - 1 * DAY_MS))

    assert log.purge_expired(now) == 1


def test_purge_event_types():
    log = _log()
    log.ingest(_event("A", 1))
    log.ingest(_event("A", 2, event_type="typing"))
    log.ingest(_event(None, 3, event_type="status"))

    removed = log.purge_event_types({"message"})

    assert removed == 2
    assert [e.event_type for e in log.query()] == ["message"]
    assert log.partition_ids() == ["A"]
    assert log.total_entries == 1


# ----------------------------------------------------------------------
# Out-of-order arrival
# ----------------------------------------------------------------------

def test_out_of_order_ingest_then_purge_drops_only_old_entries():
    now = 10 * DAY_MS
    log = _log()
    for ts in (now - HOUR_MS, now - 4 * DAY_MS, now - 2 * DAY_MS):
        log.ingest(_event("X", ts))

    removed = log.purge_older_than(now - 3 * DAY_MS)

    assert removed == 1
    assert [e.timestamp_ms for e in log.partition("X")] == [now - 2 * DAY_MS, now - HOUR_MS]


def test_partition_cap_evicts_smallest_timestamp_out_of_order():
    log = _log(partition_cap=3)
    for ts in (10, 30, 20):
        log.ingest(_event("X", ts))
    assert [e.timestamp_ms for e in log.partition("X")] == [10, 20, 30]

    log.ingest(_event("X", 5))
    assert [e.timestamp_ms for e in log.partition("X")] == [10, 20, 30]

    log.ingest(_event("X", 25))
    assert [e.timestamp_ms for e in log.partition("X")] == [20, 25, 30]
    assert log.total_entries == 3


def test_query_orders_out_of_order_arrivals():
    log = _log()
    for partition, ts in (("A", 30), ("B", 10), ("A", 5), ("B", 20)):
        log.ingest(_event(partition, ts))

    assert [e.timestamp_ms for e in log.query()] == [5, 10, 20, 30]
    assert [e.timestamp_ms for e in log.query(exclude_partition_id="A")] == [10, 20]
    assert log.count(exclude_partition_id="B") == 2


def test_clear_resets_and_bumps_version():
    store = InMemoryStore()
    log = _log(store=store)
    log.ingest(_event("A", 1))
    log.flush()
    version = log.version

    log.clear()

    assert log.total_entries == 0
    assert log.version == version + 1
    assert log.flush() is True
    assert store.load("test", "feed_A") == []
    assert store.load("test", INDEX_KEY) == []


# ----------------------------------------------------------------------
# Unseen tracking
# ----------------------------------------------------------------------

def test_switch_context_reports_unseen_entries():
    log = _log()
    assert log.switch_context("A") is None

    log.ingest(_event("B", 1, attribution=IGRIS))
    log.ingest(_event("B", 2, attribution=BERU))
    log.ingest(_event("B", 3, attribution=IGRIS))

    report = log.switch_context("B", partition_name="Shadow Guild")

    assert report.count == 3
    assert report.by_watcher == {"[Monarch] Igris": 2, "[Monarch+] Beru": 1}
    assert report.summary() == "3 signals in Shadow Guild from 2 shadows while away"
    assert log.unseen_count("B") == 0
    assert log.switch_context("B") is None


def test_unseen_counts_only_entries_since_last_visit():
    log = _log()
    log.ingest(_event("B", 1))
    log.switch_context("B")
    log.switch_context("A")

    log.ingest(_event("B", 2))
    log.ingest(_event("B", 3))
    assert log.unseen_count("B") == 2

    report = log.switch_context("B")
    assert report.count == 2


def test_entries_in_active_partition_are_seen_immediately():
    log = _log()
    log.switch_context("A")
    log.ingest(_event("A", 1))
    log.ingest(_event("A", 2))

    assert log.unseen_count("A") == 0
    log.switch_context("B")
    assert log.switch_context("A") is None


def test_eviction_shifts_last_seen_index():
    log = _log(partition_cap=3)
    for ts in (1, 2, 3):
        log.ingest(_event("B", ts))
    log.switch_context("B")
    log.switch_context("A")

    log.ingest(_event("B", 4))
    log.ingest(_event("B", 5))

    assert len(log.partition("B")) == 3
    report = log.switch_context("B")
    assert report.count == 2


# ----------------------------------------------------------------------
# Persistence
# ----------------------------------------------------------------------

def test_flush_is_noop_when_clean():
    store = RecordingStore()
    log = _log(store=store)

    assert log.flush() is False
    assert store.saved_keys == []


def test_flush_writes_only_dirty_partitions():
    store = RecordingStore()
    log = _log(store=store)
    log.ingest(_event("A", 1))
    log.ingest(_event("B", 2))

    assert log.flush() is True
    assert set(store.saved_keys) == {"feed_A", "feed_B", INDEX_KEY, DETECTIONS_KEY}
    assert log.dirty_partition_ids == set()
    assert log.flush() is False

    store.saved_keys.clear()
    log.ingest(_event("A", 3))
    log.flush()

    assert "feed_B" not in store.saved_keys
    assert "feed_A" in store.saved_keys
    assert store.load("test", INDEX_KEY) == ["A", "B"]
    assert store.load("test", DETECTIONS_KEY) == 3


def test_failed_flush_keeps_partition_dirty():
    store = RecordingStore()
    store.failing_keys.add("feed_A")
    log = _log(store=store)
    log.ingest(_event("A", 1))
    log.ingest(_event("B", 2))

    assert log.flush() is False
    assert log.dirty_partition_ids == {"A"}
    assert store.load("test", "feed_B") is not None

    store.failing_keys.clear()
    assert log.flush() is True
    assert log.dirty_partition_ids == set()
    assert len(store.load("test", "feed_A")) == 1


def test_load_restores_partitions_as_seen():
    store = InMemoryStore()
    log = _log(store=store)
    log.ingest(_event("A", 1))
    log.ingest(_event("A", 2))
    log.ingest(_event("B", 3, attribution=BERU))
    log.flush()

    restored = _log(store=store)
    restored.load()

    assert restored.total_entries == 3
    assert restored.total_detections == 3
    assert restored.session_message_count == 0
    assert restored.partition("B")[0].attribution == BERU
    assert restored.unseen_count("A") == 0
    assert restored.switch_context("A") is None
    assert restored.dirty_partition_ids == set()


def test_load_skips_corrupt_partition(tmp_path: Path):
    store = JsonFileStore(tmp_path)
    log = _log(store=store)
    log.ingest(_event("A", 1))
    log.ingest(_event("B", 2))
    log.flush()

    (tmp_path / "test" / "feed_B.json").write_text("{not json", encoding="utf-8")

    restored = _log(store=store)
    restored.load()

    assert restored.partition_ids() == ["A"]
    assert restored.total_entries == 1


def test_load_drops_malformed_entries():
    store = InMemoryStore()
    good = _event("A", 1).to_dict()
    store.save("test", INDEX_KEY, ["A", "missing"])
    store.save("test", "feed_A", [good, {"event_type": "bogus"}, "junk"])

    log = _log(store=store)
    log.load()

    assert log.total_entries == 1
    assert log.partition_ids() == ["A"]


def test_load_applies_caps_to_persisted_history():
    store = InMemoryStore()
    store.save("test", INDEX_KEY, ["A"])
    store.save("test", "feed_A", [_event("A", ts).to_dict() for ts in range(10)])

    log = _log(store=store, partition_cap=4)
    log.load()

    assert [e.timestamp_ms for e in log.partition("A")] == [6, 7, 8, 9]
    assert log.unseen_count("A") == 0


def test_load_migrates_legacy_layout():
    store = InMemoryStore()
    store.save(
        "test",
        LEGACY_FEEDS_KEY,
        {"A": [_event("A", 1).to_dict(), _event("A", 2).to_dict()]},
    )

    log = _log(store=store)
    log.load()

    assert log.total_entries == 2
    assert store.load("test", INDEX_KEY) == ["A"]
    assert len(store.load("test", "feed_A")) == 2
    assert log.dirty_partition_ids == set()


@pytest.mark.parametrize("detections", [None, "many", -3])
def test_load_ignores_invalid_detection_counter(detections):
    store = InMemoryStore()
    store.save("test", INDEX_KEY, [])
    if detections is not None:
        store.save("test", DETECTIONS_KEY, detections)

    log = _log(store=store)
    log.load()

    assert log.total_detections == 0
