from services.notifications.base import NotificationSink, Severity
from shared.logging.logger import get_logger

log = get_logger("notifications.log")

_LEVELS = {
    Severity.INFO: "info",
    Severity.SUCCESS: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
}


class LogNotificationSink(NotificationSink):
    """
    Writes notices to the runtime log. Always available.
    """

    def notify(self, message: str, severity: Severity = Severity.INFO) -> None:
        getattr(log, _LEVELS.get(severity, "info"))(f"[{severity.value}] {message}")
