"""
Discord webhook notification sink.

Each notice is posted as a single embed. Posting happens in a background
task on the running loop; failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Set

import httpx

from services.discord.embeds import notice_embed
from services.notifications.base import NotificationSink, Severity
from shared.logging.logger import get_logger

log = get_logger("notifications.webhook")


class DiscordWebhookSink(NotificationSink):
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._pending: Set[asyncio.Task] = set()

    def notify(self, message: str, severity: Severity = Severity.INFO) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running event loop; webhook notice dropped")
            return

        task = loop.create_task(self._post(message, severity))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, message: str, severity: Severity) -> None:
        payload = {"embeds": [notice_embed(message, severity).to_dict()]}
        try:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.warning(
                f"Webhook rejected notice: {e.response.status_code} "
                f"{e.response.reason_phrase}"
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Webhook delivery failed: {e}")

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()
