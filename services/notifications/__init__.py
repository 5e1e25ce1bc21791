from services.notifications.base import (
    Location,
    MemorySink,
    Navigator,
    NotificationSink,
    Severity,
)
from services.notifications.log_sink import LogNotificationSink

__all__ = [
    "Location",
    "MemorySink",
    "Navigator",
    "NotificationSink",
    "Severity",
    "LogNotificationSink",
]
