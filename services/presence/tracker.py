"""
Presence tracking for monitored subjects.

Derives notices from raw status, activity, typing and relationship
events. State is in-memory only; nothing here is persisted.

Delivery rules:
- notices computed during the startup grace window are deferred until
  the window elapses
- alert toggles suppress delivery, never state updates
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from services.notifications.base import Severity
from shared.config.senses import (
    TYPING_COOLDOWN_MAX_MS,
    TYPING_COOLDOWN_MIN_MS,
    AlertsConfig,
    PresenceConfig,
)
from shared.logging.logger import get_logger

log = get_logger("presence.tracker")

ONLINE_STATUSES = {"online", "idle", "dnd"}
OFFLINE_STATUSES = {"offline", "invisible"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_duration(ms: int) -> str:
    total_minutes = max(0, int(ms)) // 60_000
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def is_online(status: Optional[str]) -> bool:
    return (status or "") in ONLINE_STATUSES


class NoticeKind(Enum):
    NOW_ACTIVE = "now_active"
    STATUS_CHANGE = "status_change"
    IDLE_RETURN = "idle_return"
    TYPING = "typing"
    RELATIONSHIP = "relationship"


@dataclass(frozen=True)
class PresenceNotice:
    kind: NoticeKind
    subject_id: str
    message: str
    timestamp_ms: int
    severity: Severity = Severity.INFO
    location_id: Optional[str] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None


class DelayScheduler(Protocol):
    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> object:
        ...


class PresenceTracker:
    def __init__(
        self,
        *,
        config: Optional[PresenceConfig] = None,
        alerts: Optional[AlertsConfig] = None,
        deliver: Optional[Callable[[PresenceNotice], None]] = None,
        scheduler: Optional[DelayScheduler] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._config = config or PresenceConfig()
        self._alerts = alerts or AlertsConfig()
        self._deliver = deliver
        self._scheduler = scheduler
        self._clock_ms = clock_ms

        self._cooldown_ms = min(
            TYPING_COOLDOWN_MAX_MS,
            max(TYPING_COOLDOWN_MIN_MS, int(self._config.typing_cooldown_ms)),
        )

        self._statuses: Dict[str, str] = {}
        self._last_activity: Dict[str, int] = {}
        self._announced: Set[str] = set()
        self._typing_cooldowns: Dict[Tuple[str, str], int] = {}

        self._started_at: Optional[int] = None
        self._deferred = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, now_ms: Optional[int] = None) -> None:
        self._started_at = self._clock_ms() if now_ms is None else now_ms
        log.debug(
            f"Presence tracking started; grace window "
            f"{self._config.startup_grace_ms}ms"
        )

    @property
    def deferred_count(self) -> int:
        return self._deferred

    @property
    def typing_cooldown_ms(self) -> int:
        return self._cooldown_ms

    def in_grace_window(self, now_ms: int) -> bool:
        if self._started_at is None:
            return False
        return now_ms - self._started_at < self._config.startup_grace_ms

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status_of(self, subject_id: str) -> Optional[str]:
        return self._statuses.get(subject_id)

    def last_activity_ms(self, subject_id: str) -> Optional[int]:
        return self._last_activity.get(subject_id)

    def marked_online_count(self, subject_ids: Iterable[str]) -> int:
        return sum(1 for sid in subject_ids if is_online(self._statuses.get(sid)))

    @property
    def cooldown_size(self) -> int:
        return len(self._typing_cooldowns)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _alert_enabled(self, kind: NoticeKind) -> bool:
        if kind == NoticeKind.STATUS_CHANGE:
            return self._alerts.status_alerts
        if kind == NoticeKind.TYPING:
            return self._alerts.typing_alerts
        if kind == NoticeKind.RELATIONSHIP:
            return self._alerts.relationship_alerts
        return self._alerts.presence_alerts

    def _fire(self, notice: PresenceNotice) -> None:
        if self._deliver is None:
            return
        try:
            self._deliver(notice)
        except Exception as e:
            log.warning(f"Presence notice delivery failed: {e}")

    def _emit(self, notice: PresenceNotice) -> PresenceNotice:
        if not self._alert_enabled(notice.kind):
            log.debug(f"{notice.kind.value} alerts disabled; not delivering")
            return notice

        # Grace is measured on the processing clock, not the event time
        now = self._clock_ms()
        if self._scheduler is not None and self.in_grace_window(now):
            grace_ms = self._config.startup_grace_ms
            delay_ms = min(grace_ms, max(0, self._started_at + grace_ms - now))
            self._deferred += 1
            self._scheduler.call_later(delay_ms / 1000.0, lambda: self._fire(notice))
            log.debug(f"Deferred {notice.kind.value} notice by {delay_ms}ms (startup grace)")
            return notice

        self._fire(notice)
        return notice

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def seed_statuses(self, statuses: Mapping[str, str]) -> int:
        """
        Record baseline statuses without emitting anything.
        """
        for subject_id, status in statuses.items():
            status = (status or "offline").lower()
            self._statuses[subject_id] = status
            if status in ONLINE_STATUSES:
                self._announced.add(subject_id)
        log.debug(f"Seeded {len(statuses)} presence baseline(s)")
        return len(statuses)

    def observe_status(
        self,
        subject_id: str,
        status: str,
        now_ms: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Optional[PresenceNotice]:
        now = self._clock_ms() if now_ms is None else now_ms
        status = (status or "offline").lower()
        label = name or subject_id

        previous = self._statuses.get(subject_id)
        self._statuses[subject_id] = status

        if previous is None:
            if status in ONLINE_STATUSES and subject_id not in self._announced:
                self._announced.add(subject_id)
                return self._emit(
                    PresenceNotice(
                        kind=NoticeKind.NOW_ACTIVE,
                        subject_id=subject_id,
                        message=f"{label} is now active ({status})",
                        timestamp_ms=now,
                        status=status,
                    )
                )
            return None

        if previous == status:
            return None

        self._announced.add(subject_id)
        return self._emit(
            PresenceNotice(
                kind=NoticeKind.STATUS_CHANGE,
                subject_id=subject_id,
                message=f"{label}: {previous} -> {status}",
                timestamp_ms=now,
                previous_status=previous,
                status=status,
            )
        )

    def observe_activity(
        self,
        subject_id: str,
        now_ms: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Optional[PresenceNotice]:
        now = self._clock_ms() if now_ms is None else now_ms
        label = name or subject_id

        last = self._last_activity.get(subject_id)
        self._last_activity[subject_id] = now

        if subject_id not in self._announced:
            self._announced.add(subject_id)
            return self._emit(
                PresenceNotice(
                    kind=NoticeKind.NOW_ACTIVE,
                    subject_id=subject_id,
                    message=f"{label} is now active",
                    timestamp_ms=now,
                )
            )

        if last is not None and now - last >= self._config.idle_threshold_ms:
            away = format_duration(now - last)
            return self._emit(
                PresenceNotice(
                    kind=NoticeKind.IDLE_RETURN,
                    subject_id=subject_id,
                    message=f"{label} returned after {away} idle",
                    timestamp_ms=now,
                )
            )
        return None

    def observe_typing(
        self,
        subject_id: str,
        location_id: Optional[str],
        now_ms: Optional[int] = None,
        name: Optional[str] = None,
        location_name: Optional[str] = None,
    ) -> Optional[PresenceNotice]:
        now = self._clock_ms() if now_ms is None else now_ms
        key = (subject_id, location_id or "")

        last = self._typing_cooldowns.get(key)
        if last is not None and now - last < self._cooldown_ms:
            return None

        self._typing_cooldowns[key] = now
        if len(self._typing_cooldowns) > self._config.cooldown_sweep_size:
            self.sweep_cooldowns(now)

        where = f" in #{location_name}" if location_name else ""
        return self._emit(
            PresenceNotice(
                kind=NoticeKind.TYPING,
                subject_id=subject_id,
                message=f"{name or subject_id} is typing{where}",
                timestamp_ms=now,
                location_id=location_id,
            )
        )

    def observe_connection_removed(
        self,
        subject_id: str,
        now_ms: Optional[int] = None,
        name: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> PresenceNotice:
        """
        A relationship with the subject ended. `scope` names the shared
        context that was left; without it the direct connection was removed.
        """
        now = self._clock_ms() if now_ms is None else now_ms
        label = name or subject_id
        message = f"{label} left {scope}" if scope else f"{label} removed the connection"
        return self._emit(
            PresenceNotice(
                kind=NoticeKind.RELATIONSHIP,
                subject_id=subject_id,
                message=message,
                timestamp_ms=now,
                severity=Severity.WARNING,
            )
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_cooldowns(self, now_ms: Optional[int] = None) -> int:
        now = self._clock_ms() if now_ms is None else now_ms
        horizon = self._cooldown_ms * self._config.cooldown_sweep_factor
        stale: List[Tuple[str, str]] = [
            key for key, ts in self._typing_cooldowns.items() if now - ts > horizon
        ]
        for key in stale:
            del self._typing_cooldowns[key]
        if stale:
            log.debug(f"Swept {len(stale)} typing cooldown entr(ies)")
        return len(stale)

    def forget(self, subject_id: str) -> None:
        self._statuses.pop(subject_id, None)
        self._last_activity.pop(subject_id, None)
        self._announced.discard(subject_id)
        for key in [k for k in self._typing_cooldowns if k[0] == subject_id]:
            del self._typing_cooldowns[key]

    def reset(self) -> None:
        self._statuses.clear()
        self._last_activity.clear()
        self._announced.clear()
        self._typing_cooldowns.clear()
