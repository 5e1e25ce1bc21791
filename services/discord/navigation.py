from __future__ import annotations

import webbrowser
from typing import Callable, Optional

from services.notifications.base import Location, Navigator
from shared.logging.logger import get_logger
from shared.monitoring.events import GLOBAL_PARTITION_ID

log = get_logger("discord.navigation", runtime="discord")

JUMP_BASE = "https://discord.com/channels"


def jump_url(location: Location) -> Optional[str]:
    """
    Discord jump link for a location, or None when there is no channel.

    Events outside any guild use the "@me" scope.
    """
    if not location.location_id:
        return None

    scope = location.partition_id
    if not scope or scope == GLOBAL_PARTITION_ID:
        scope = "@me"

    url = f"{JUMP_BASE}/{scope}/{location.location_id}"
    if location.event_id:
        url = f"{url}/{location.event_id}"
    return url


class JumpLinkNavigator(Navigator):
    def __init__(self, opener: Optional[Callable[[str], object]] = None):
        self._opener = opener or webbrowser.open

    def navigate(self, location: Location) -> bool:
        url = jump_url(location)
        if url is None:
            log.debug(f"No channel for location in partition {location.partition_id}")
            return False

        try:
            self._opener(url)
        except Exception as e:
            log.warning(f"Failed to open {url}: {e}")
            return False

        log.info(f"Navigated to {url}")
        return True
