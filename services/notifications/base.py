from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from shared.monitoring.events import ActivityEvent


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationSink(ABC):
    """
    Fire-and-forget notice delivery.

    notify() must return promptly and must not raise; sinks that perform
    I/O schedule it in the background.
    """

    @abstractmethod
    def notify(self, message: str, severity: Severity = Severity.INFO) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


@dataclass(frozen=True)
class Location:
    """Where a historical event happened, for navigation."""

    partition_id: str
    location_id: Optional[str] = None
    event_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: ActivityEvent) -> "Location":
        return cls(
            partition_id=event.partition_id,
            location_id=event.location_id,
            event_id=event.event_id,
        )


class Navigator(ABC):
    @abstractmethod
    def navigate(self, location: Location) -> bool:
        """
        Open the given location. Returns False when it cannot be resolved.
        """
        raise NotImplementedError


class MemorySink(NotificationSink):
    """Collects notices in order; used by operator scripts and tests."""

    def __init__(self) -> None:
        self.notices: List[Tuple[str, Severity]] = []

    def notify(self, message: str, severity: Severity = Severity.INFO) -> None:
        self.notices.append((message, severity))

    def messages(self) -> List[str]:
        return [message for message, _ in self.notices]
