"""
Monitoring runtime.

Wires the allocator, activity log and presence tracker together behind
one set of ingestion handlers. Handlers accept plain dict payloads using
the ActivityEvent field names:

    subject_id (required), subject_name, partition_id, partition_name,
    location_id, location_name, content, event_id, timestamp_ms, status

The source makes no delivery-order guarantee, so events are stamped with
the runtime clock on ingestion. A payload timestamp_ms is kept as the
event's source_timestamp_ms.

Nothing raised inside a handler escapes it: malformed payloads are logged
and dropped, events about unmonitored subjects are ignored.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.allocator import DeployResult, ResourceAllocator
from core.scheduler import Scheduler
from services.notifications.base import Location, Navigator, NotificationSink, Severity
from services.pool.registry import ProviderRegistry
from services.presence.tracker import OFFLINE_STATUSES, PresenceNotice, PresenceTracker
from shared.config.senses import SensesConfig
from shared.logging.logger import get_logger
from shared.monitoring.errors import MalformedEvent
from shared.monitoring.events import ActivityEvent, Attribution, create_activity_event
from shared.monitoring.models import Binding, TargetSubject, WatcherResource
from shared.storage.activity_log import EventLog, UnseenReport
from shared.storage.persistence import PersistenceStore

log = get_logger("core.runtime")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_subject(payload: Any) -> str:
    if not isinstance(payload, Mapping):
        raise MalformedEvent("payload is not a mapping")
    subject_id = payload.get("subject_id")
    if not subject_id:
        raise MalformedEvent("subject_id is required")
    return str(subject_id)


class SensesRuntime:
    def __init__(
        self,
        *,
        config: SensesConfig,
        store: PersistenceStore,
        registry: ProviderRegistry,
        sink: NotificationSink,
        navigator: Optional[Navigator] = None,
        scheduler: Optional[Scheduler] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.config = config
        self.sink = sink
        self.navigator = navigator
        self.scheduler = scheduler or Scheduler()
        self._clock_ms = clock_ms
        self._history_types = set(config.feed.history_event_types)
        self._started = False

        namespace = config.storage.namespace

        self.allocator = ResourceAllocator(
            registry=registry,
            store=store,
            namespace=namespace,
            cache_ttl_seconds=config.allocator.availability_ttl_seconds,
            now_ms=clock_ms,
        )
        self.event_log = EventLog(
            store=store,
            namespace=namespace,
            config=config.feed,
            is_monitored=self.allocator.is_monitored,
        )
        self.tracker = PresenceTracker(
            config=config.presence,
            alerts=config.alerts,
            deliver=self._deliver_notice,
            scheduler=self.scheduler,
            clock_ms=clock_ms,
        )

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            log.warning("Runtime already started; skipping")
            return

        log.info("Senses runtime starting")

        self.allocator.load()
        self.event_log.load()

        if self.config.allocator.validate_on_start:
            pruned = await self.allocator.validate_bindings()
            if pruned:
                log.info(f"Startup validation pruned {pruned} binding(s)")

        self.event_log.purge_event_types(self._history_types)
        self.event_log.purge_expired(self._clock_ms())

        self.tracker.start(self._clock_ms())

        feed = self.config.feed
        self.scheduler.every("flush", feed.flush_interval_seconds, self.event_log.flush)
        self.scheduler.every("purge", feed.purge_interval_seconds, self._purge)
        self.scheduler.every(
            "typing-sweep",
            self.config.presence.sweep_interval_seconds,
            self.tracker.sweep_cooldowns,
        )

        self._started = True
        log.info(
            f"Senses runtime started: bindings={self.allocator.binding_count} "
            f"entries={self.event_log.total_entries} "
            f"partitions={len(self.event_log.partition_ids())}"
        )

    async def stop(self) -> None:
        log.info("Senses runtime stopping")

        try:
            # Deferred startup notices go out before the sink closes
            await self.scheduler.shutdown(run_pending=True)
        except Exception as e:
            log.warning(f"Scheduler shutdown error ignored: {e}")

        self.event_log.flush()

        try:
            await self.sink.aclose()
        except Exception as e:
            log.warning(f"Notification sink close error ignored: {e}")

        self._started = False
        log.info("Senses runtime stopped")

    def _purge(self) -> int:
        return self.event_log.purge_expired(self._clock_ms())

    # ------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------

    def _notify(self, message: str, severity: Severity = Severity.INFO) -> None:
        try:
            self.sink.notify(message, severity)
        except Exception as e:
            log.warning(f"Notification sink failed: {e}")

    def _deliver_notice(self, notice: PresenceNotice) -> None:
        self._notify(notice.message, notice.severity)

    # ------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------

    def _build_event(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        binding: Binding,
        **overrides: Any,
    ) -> ActivityEvent:
        fields: Dict[str, Any] = {
            "partition_id": payload.get("partition_id"),
            "location_id": payload.get("location_id"),
            "content": payload.get("content"),
            "event_id": payload.get("event_id"),
            "timestamp_ms": self._clock_ms(),
            "source_timestamp_ms": payload.get("timestamp_ms"),
            "subject_name": payload.get("subject_name") or binding.subject_name,
            "partition_name": payload.get("partition_name"),
            "location_name": payload.get("location_name"),
        }
        fields.update(overrides)
        return create_activity_event(
            event_type=event_type,
            subject_id=binding.subject_id,
            attribution=Attribution.from_binding(binding),
            **fields,
        )

    def _record(self, event: ActivityEvent) -> bool:
        if event.event_type not in self._history_types:
            return False
        return self.event_log.ingest(event)

    def _resolve(self, kind: str, payload: Any) -> Optional[Binding]:
        subject_id = _require_subject(payload)
        binding = self.allocator.binding_for_subject(subject_id)
        if binding is None:
            log.debug(f"Ignoring {kind} for unmonitored subject {subject_id}")
        return binding

    def handle_message(self, payload: Any) -> Optional[ActivityEvent]:
        try:
            binding = self._resolve("message", payload)
            if binding is None:
                return None
            event = self._build_event("message", payload, binding)
        except MalformedEvent as e:
            log.warning(f"MALFORMED_EVENT message dropped: {e}")
            return None

        name = event.subject_name or event.subject_id
        self.tracker.observe_activity(event.subject_id, event.timestamp_ms, name)
        self._record(event)

        if self.config.alerts.message_alerts:
            self._message_notice(event, name)
        return event

    def _message_notice(self, event: ActivityEvent, name: str) -> None:
        active = self.event_log.active_partition_id
        if event.partition_id != active:
            where = event.partition_name or event.partition_id
            self._notify(f"{event.attribution.label()} sensed {name} in {where}")
            return

        if self.tracker.status_of(event.subject_id) in OFFLINE_STATUSES:
            self._notify(
                f"{name} is sending messages while appearing offline (invisible)",
                Severity.WARNING,
            )

    def handle_status(self, payload: Any) -> Optional[ActivityEvent]:
        try:
            binding = self._resolve("status", payload)
            if binding is None:
                return None
            status = str(payload.get("status") or "").strip().lower()
            if not status:
                raise MalformedEvent("status is required")
            event = self._build_event(
                "status",
                payload,
                binding,
                partition_id=None,
                location_id=None,
                content=status,
            )
        except MalformedEvent as e:
            log.warning(f"MALFORMED_EVENT status dropped: {e}")
            return None

        notice = self.tracker.observe_status(
            event.subject_id, status, event.timestamp_ms, event.subject_name
        )
        if notice is None:
            return None

        self._record(event)
        return event

    def handle_typing(self, payload: Any) -> Optional[ActivityEvent]:
        try:
            binding = self._resolve("typing", payload)
            if binding is None:
                return None
            event = self._build_event("typing", payload, binding, content=None)
        except MalformedEvent as e:
            log.warning(f"MALFORMED_EVENT typing dropped: {e}")
            return None

        notice = self.tracker.observe_typing(
            event.subject_id,
            event.location_id,
            event.timestamp_ms,
            name=event.subject_name,
            location_name=event.location_name,
        )
        if notice is None:
            return None

        self._record(event)
        return event

    def handle_connection_removed(self, payload: Any) -> Optional[ActivityEvent]:
        try:
            binding = self._resolve("relationship", payload)
            if binding is None:
                return None
            scope = payload.get("partition_name") or payload.get("partition_id")
            scope = str(scope) if scope else None
            event = self._build_event(
                "relationship",
                payload,
                binding,
                partition_id=None,
                content=f"left {scope}" if scope else "connection removed",
            )
        except MalformedEvent as e:
            log.warning(f"MALFORMED_EVENT relationship dropped: {e}")
            return None

        self.tracker.observe_connection_removed(
            event.subject_id, event.timestamp_ms, event.subject_name, scope=scope
        )
        self._record(event)
        return event

    def seed_statuses(self, statuses: Mapping[str, str]) -> int:
        monitored = self.allocator.monitored_subject_ids()
        return self.tracker.seed_statuses(
            {sid: status for sid, status in statuses.items() if sid in monitored}
        )

    # ------------------------------------------------------------
    # Viewing context and navigation
    # ------------------------------------------------------------

    def handle_context_switch(
        self,
        partition_id: Optional[str],
        partition_name: Optional[str] = None,
    ) -> Optional[UnseenReport]:
        report = self.event_log.switch_context(partition_id, partition_name)
        if report is not None:
            self._notify(report.summary())
        return report

    def select_event(self, event: ActivityEvent) -> bool:
        if self.navigator is None:
            log.debug("No navigator configured; selection ignored")
            return False
        return self.navigator.navigate(Location.from_event(event))

    # ------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------

    async def deploy(
        self,
        watcher_id: str,
        subject_id: str,
        subject_name: Optional[str] = None,
    ) -> DeployResult:
        subject = TargetSubject(id=subject_id, name=subject_name or "Unknown")
        result = await self.allocator.deploy(watcher_id, subject)

        if result.ok:
            self._notify(
                f"{Attribution.from_binding(result.binding).label()} now watching "
                f"{subject.name}",
                Severity.SUCCESS,
            )
        else:
            self._notify(
                f"Could not deploy {watcher_id} to {subject.name}: {result.reason.value}",
                Severity.WARNING,
            )
        return result

    def recall(self, watcher_id: str) -> bool:
        binding = self.allocator.binding_for_watcher(watcher_id)
        if not self.allocator.recall(watcher_id):
            return False

        self.tracker.forget(binding.subject_id)
        self._notify(
            f"{Attribution.from_binding(binding).label()} recalled from "
            f"{binding.subject_name}"
        )
        return True

    async def available(self, refresh: bool = False) -> List[WatcherResource]:
        return await self.allocator.get_available_resources(refresh=refresh)

    def marked_online_count(self) -> int:
        return self.tracker.marked_online_count(self.allocator.monitored_subject_ids())

    def stats(self) -> Dict[str, Any]:
        return {
            "bindings": self.allocator.binding_count,
            "partitions": len(self.event_log.partition_ids()),
            "entries": self.event_log.total_entries,
            "total_detections": self.event_log.total_detections,
            "session_messages": self.event_log.session_message_count,
            "online": self.marked_online_count(),
            "version": self.event_log.version,
        }
