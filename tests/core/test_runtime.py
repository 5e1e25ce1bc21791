import asyncio

from core.runtime import SensesRuntime
from services.notifications.base import MemorySink, Navigator, Severity
from services.pool.base import StaticPoolProvider
from services.pool.registry import ProviderRegistry
from shared.config.senses import load_senses_config
from shared.monitoring.models import WatcherResource
from shared.storage.activity_log import INDEX_KEY
from shared.storage.persistence import InMemoryStore

START_MS = 1_000_000
LATER_MS = START_MS + 60_000
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class FakeClock:
    def __init__(self, now_ms=START_MS):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms


class RecordingNavigator(Navigator):
    def __init__(self):
        self.locations = []

    def navigate(self, location):
        self.locations.append(location)
        return True


def _runtime(raw_config=None, store=None, clock=None):
    config = load_senses_config(raw=raw_config or {})
    registry = ProviderRegistry(timeout_seconds=1)
    registry.register(
        StaticPoolProvider(
            name="army",
            candidates=[
                WatcherResource(id="igris", name="Igris", rank="Monarch"),
                WatcherResource(id="beru", name="Beru", rank="Monarch+"),
            ],
        )
    )
    sink = MemorySink()
    navigator = RecordingNavigator()
    runtime = SensesRuntime(
        config=config,
        store=store or InMemoryStore(),
        registry=registry,
        sink=sink,
        navigator=navigator,
        clock_ms=clock or FakeClock(),
    )
    return runtime, sink, navigator


def _message(subject_id="s1", partition_id="g1", ts=LATER_MS, **extra):
    payload = {
        "subject_id": subject_id,
        "partition_id": partition_id,
        "partition_name": f"Guild {partition_id}",
        "location_id": "c1",
        "event_id": f"m{ts}",
        "content": "hello",
        "timestamp_ms": ts,
    }
    payload.update(extra)
    return payload


def test_message_for_monitored_subject_is_recorded():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        event = runtime.handle_message(_message())
        await runtime.stop()
        return event

    event = asyncio.run(scenario())

    assert event.attribution.watcher_id == "igris"
    assert event.subject_name == "Target"
    assert runtime.event_log.total_entries == 1
    assert runtime.event_log.total_detections == 1
    assert "[Monarch] Igris sensed Target in Guild g1" in sink.messages()
    assert "Target is now active" in sink.messages()


def test_unmonitored_and_malformed_payloads_are_dropped():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        unmonitored = runtime.handle_message(_message(subject_id="stranger"))
        missing = runtime.handle_message({"content": "no subject"})
        not_a_dict = runtime.handle_typing(["junk"])
        await runtime.stop()
        return unmonitored, missing, not_a_dict

    assert asyncio.run(scenario()) == (None, None, None)
    assert runtime.event_log.total_entries == 0


def test_message_while_offline_flags_invisible():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        runtime.handle_status({"subject_id": "s1", "status": "offline", "timestamp_ms": LATER_MS})
        runtime.handle_context_switch("g1")
        runtime.handle_message(_message(ts=LATER_MS + 1))
        await runtime.stop()

    asyncio.run(scenario())

    warnings = [m for m, severity in sink.notices if severity is Severity.WARNING]
    assert any("invisible" in m for m in warnings)


def test_context_switch_reports_signals_while_away():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "One")
        await runtime.deploy("beru", "s2", "Two")
        runtime.handle_context_switch("g1")
        runtime.handle_message(_message("s1", "g2", LATER_MS))
        runtime.handle_message(_message("s2", "g2", LATER_MS + 1))
        report = runtime.handle_context_switch("g2", "Guild g2")
        await runtime.stop()
        return report

    report = asyncio.run(scenario())

    assert report.count == 2
    assert "2 signals in Guild g2 from 2 shadows while away" in sink.messages()


def test_status_recorded_only_on_change():
    runtime, _, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        first = runtime.handle_status({"subject_id": "s1", "status": "online", "timestamp_ms": LATER_MS})
        repeat = runtime.handle_status({"subject_id": "s1", "status": "online", "timestamp_ms": LATER_MS + 1})
        change = runtime.handle_status({"subject_id": "s1", "status": "idle", "timestamp_ms": LATER_MS + 2})
        missing = runtime.handle_status({"subject_id": "s1", "timestamp_ms": LATER_MS + 3})
        await runtime.stop()
        return first, repeat, change, missing

    first, repeat, change, missing = asyncio.run(scenario())

    assert first is not None
    assert repeat is None
    assert change.content == "idle"
    assert missing is None
    assert runtime.event_log.partition_ids() == ["__global__"]
    assert runtime.event_log.total_entries == 2


def test_typing_respects_cooldown_and_history_types():
    runtime, _, _ = _runtime({"feed": {"history_event_types": ["message"]}})

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        payload = {"subject_id": "s1", "partition_id": "g1", "location_id": "c1", "timestamp_ms": LATER_MS}
        first = runtime.handle_typing(payload)
        second = runtime.handle_typing(dict(payload, timestamp_ms=LATER_MS + 1_000))
        await runtime.stop()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert runtime.event_log.total_entries == 0


def test_connection_removed_is_recorded():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        event = runtime.handle_connection_removed({"subject_id": "s1", "timestamp_ms": LATER_MS})
        await runtime.stop()
        return event

    event = asyncio.run(scenario())

    assert event.event_type == "relationship"
    assert event.partition_id == "__global__"
    assert ("Target removed the connection", Severity.WARNING) in sink.notices


def test_select_event_navigates_to_location():
    runtime, _, navigator = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        event = runtime.handle_message(_message())
        await runtime.stop()
        return event

    event = asyncio.run(scenario())

    assert runtime.select_event(event) is True
    location = navigator.locations[0]
    assert (location.partition_id, location.location_id, location.event_id) == ("g1", "c1", f"m{LATER_MS}")


def test_stop_flushes_and_restart_restores_state():
    store = InMemoryStore()
    runtime, _, _ = _runtime(store=store)

    async def first_run():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        runtime.handle_message(_message())
        await runtime.stop()

    asyncio.run(first_run())
    assert store.load("ShadowSenses", INDEX_KEY) == ["g1"]

    restarted, _, _ = _runtime(store=store)

    async def second_run():
        await restarted.start()
        await restarted.stop()

    asyncio.run(second_run())

    assert restarted.allocator.is_bound("igris")
    assert restarted.event_log.total_entries == 1
    assert restarted.stats()["total_detections"] == 1


def test_recall_stops_recording_and_notifies():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        recalled = runtime.recall("igris")
        event = runtime.handle_message(_message())
        failed = await runtime.deploy("ghost", "s2")
        await runtime.stop()
        return recalled, event, failed

    recalled, event, failed = asyncio.run(scenario())

    assert recalled is True
    assert event is None
    assert runtime.recall("igris") is False
    assert not failed.ok
    assert "[Monarch] Igris recalled from Target" in sink.messages()
    assert "Could not deploy ghost to Unknown: resource_unavailable" in sink.messages()


def test_seed_statuses_only_tracks_monitored_subjects():
    runtime, _, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        seeded = runtime.seed_statuses({"s1": "online", "s2": "online"})
        await runtime.stop()
        return seeded

    assert asyncio.run(scenario()) == 1
    assert runtime.marked_online_count() == 1


def test_events_are_ordered_by_arrival_not_source_time():
    clock = FakeClock()
    runtime, _, _ = _runtime(clock=clock)

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1")
        # delivered late: created long before the next message
        late = runtime.handle_message(_message(ts=START_MS - 4 * DAY_MS, event_id="late"))
        clock.now_ms = START_MS + 2 * DAY_MS
        fresh = runtime.handle_message(
            _message(ts=START_MS + 2 * DAY_MS - HOUR_MS, event_id="fresh")
        )
        clock.now_ms = START_MS + 3 * DAY_MS + 1
        purged = runtime.event_log.purge_expired(clock())
        await runtime.stop()
        return late, fresh, purged

    late, fresh, purged = asyncio.run(scenario())

    assert late.timestamp_ms == START_MS
    assert late.source_timestamp_ms == START_MS - 4 * DAY_MS
    assert fresh.source_timestamp_ms == START_MS + 2 * DAY_MS - HOUR_MS
    assert purged == 1
    assert [e.event_id for e in runtime.event_log.partition("g1")] == ["fresh"]


def test_notices_deferred_at_startup_are_delivered_on_stop():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        runtime.handle_connection_removed({"subject_id": "s1", "timestamp_ms": START_MS - DAY_MS})
        pending = runtime.scheduler.pending_callbacks
        before = list(sink.messages())
        await runtime.stop()
        return pending, before

    pending, before = asyncio.run(scenario())

    assert pending == 1
    assert "Target removed the connection" not in before
    assert "Target removed the connection" in sink.messages()


def test_member_leaving_guild_is_reported_with_guild_name():
    runtime, sink, _ = _runtime()

    async def scenario():
        await runtime.start()
        await runtime.deploy("igris", "s1", "Target")
        event = runtime.handle_connection_removed(
            {"subject_id": "s1", "partition_id": "g1", "partition_name": "Guild g1"}
        )
        await runtime.stop()
        return event

    event = asyncio.run(scenario())

    assert event.partition_id == "__global__"
    assert event.content == "left Guild g1"
    assert ("Target left Guild g1", Severity.WARNING) in sink.notices
