"""
Discord Client (Ingestion Adapter)

This module owns the Discord connection itself and translates gateway
events into SensesRuntime calls.

Responsibilities:
- connect to Discord with the intents monitoring needs
- seed presence baselines on ready
- forward message / presence / typing / member-removal events
- treat the operator's own messages as context switches: the guild the
  operator is talking in is the one being viewed
- expose a clean async run() / shutdown() contract

A bot account has no friend list, so a monitored member leaving a shared
guild is the relationship signal, reported as "<name> left <guild>".

IMPORTANT:
- This client MUST NOT create its own event loop
- Payload translation lives in module-level functions so it can be
  exercised without a gateway connection
"""

from __future__ import annotations

import os
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import discord

from dotenv import load_dotenv

from core.runtime import SensesRuntime
from shared.logging.logger import get_logger

log = get_logger("discord.client", runtime="discord")


# ----------------------------------------------------------------------
# Payload translation
# ----------------------------------------------------------------------

def _ms(when: Optional[datetime]) -> Optional[int]:
    if when is None:
        return None
    return int(when.timestamp() * 1000)


def _display_name(user: Any) -> Optional[str]:
    return getattr(user, "display_name", None) or getattr(user, "name", None)


def _guild_fields(guild: Any) -> Dict[str, Optional[str]]:
    if guild is None:
        return {"partition_id": None, "partition_name": None}
    return {"partition_id": str(guild.id), "partition_name": getattr(guild, "name", None)}


def message_payload(message: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "subject_id": str(message.author.id),
        "subject_name": _display_name(message.author),
        "location_id": str(message.channel.id),
        "location_name": getattr(message.channel, "name", None),
        "content": message.content,
        "event_id": str(message.id),
        "timestamp_ms": _ms(getattr(message, "created_at", None)),
    }
    payload.update(_guild_fields(getattr(message, "guild", None)))
    return payload


def status_payload(member: Any) -> Dict[str, Any]:
    return {
        "subject_id": str(member.id),
        "subject_name": _display_name(member),
        "status": str(member.status),
    }


def typing_payload(channel: Any, user: Any, when: Optional[datetime]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "subject_id": str(user.id),
        "subject_name": _display_name(user),
        "location_id": str(channel.id),
        "location_name": getattr(channel, "name", None),
        "timestamp_ms": _ms(when),
    }
    payload.update(_guild_fields(getattr(channel, "guild", None)))
    return payload


def removal_payload(member: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "subject_id": str(member.id),
        "subject_name": _display_name(member),
    }
    payload.update(_guild_fields(getattr(member, "guild", None)))
    return payload


def operator_context(
    message: Any, operator_id: Optional[str]
) -> Optional[Tuple[Optional[str], Optional[str]]]:
    """
    (partition_id, partition_name) when `message` was sent by the operator,
    None otherwise. Direct messages map to (None, None).
    """
    if not operator_id or str(message.author.id) != operator_id:
        return None
    fields = _guild_fields(getattr(message, "guild", None))
    return fields["partition_id"], fields["partition_name"]


def collect_statuses(guilds: Any) -> Dict[str, str]:
    statuses: Dict[str, str] = {}
    for guild in guilds:
        for member in getattr(guild, "members", ()):
            statuses.setdefault(str(member.id), str(member.status))
    return statuses


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------

class DiscordSensesClient:
    """
    Thin wrapper around discord.Client.

    This class provides:
    - async run() entrypoint
    - async shutdown()
    - gateway event forwarding into the runtime
    """

    def __init__(
        self,
        runtime: SensesRuntime,
        token_env: str = "DISCORD_BOT_TOKEN",
        operator_id_env: str = "SENSES_OPERATOR_ID",
    ):
        load_dotenv()

        token = os.getenv(token_env)
        if not token:
            raise RuntimeError(f"{token_env} not found in environment")

        log.info(f"Discord bot token present: {bool(token)}")

        self._token: str = token
        self._operator_id: Optional[str] = os.getenv(operator_id_env) or None
        if not self._operator_id:
            log.info(f"{operator_id_env} not set; context switches disabled")
        self._runtime = runtime
        self._client: Optional[discord.Client] = None
        self._ready_event = asyncio.Event()

    # --------------------------------------------------

    def _build_client(self) -> discord.Client:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.presences = True
        intents.messages = True
        intents.message_content = True
        intents.typing = True

        client = discord.Client(intents=intents)
        runtime = self._runtime

        @client.event
        async def on_ready():
            log.info(
                f"Discord connected as {client.user} "
                f"(id={client.user.id}) "
                f"guilds={len(client.guilds)}"
            )
            seeded = runtime.seed_statuses(collect_statuses(client.guilds))
            log.info(f"Seeded {seeded} monitored presence baseline(s)")
            self._ready_event.set()

        @client.event
        async def on_resumed():
            log.info("Discord connection resumed")

        @client.event
        async def on_disconnect():
            log.warning("Discord connection lost")

        @client.event
        async def on_message(message: discord.Message):
            if client.user and message.author.id == client.user.id:
                return
            context = operator_context(message, self._operator_id)
            if context is not None:
                self.switch_context(*context)
                return
            runtime.handle_message(message_payload(message))

        @client.event
        async def on_presence_update(before: discord.Member, after: discord.Member):
            if before.status == after.status:
                return
            runtime.handle_status(status_payload(after))

        @client.event
        async def on_typing(channel, user, when):
            runtime.handle_typing(typing_payload(channel, user, when))

        @client.event
        async def on_member_remove(member: discord.Member):
            runtime.handle_connection_removed(removal_payload(member))

        return client

    # --------------------------------------------------

    def switch_context(
        self, partition_id: Optional[str], partition_name: Optional[str] = None
    ) -> None:
        """
        Mark a guild as the one currently being viewed.
        """
        if partition_id is not None and partition_name is None and self._client is not None:
            guild = self._client.get_guild(int(partition_id))
            partition_name = guild.name if guild else None
        self._runtime.handle_context_switch(partition_id, partition_name)

    async def wait_ready(self) -> None:
        await self._ready_event.wait()

    # --------------------------------------------------

    async def run(self):
        """
        Start the Discord client and block until shutdown.
        """
        if self._client is not None:
            raise RuntimeError("Discord client already running")

        log.info("Initializing Discord client")

        self._client = self._build_client()

        try:
            await self._client.start(self._token)
        except asyncio.CancelledError:
            log.info("Discord client task cancelled")
            raise
        except Exception as e:
            log.error(f"Discord client crashed: {e}")
            raise
        finally:
            log.info("Discord client stopped")

    # --------------------------------------------------

    async def shutdown(self):
        """
        Gracefully close the Discord connection.
        """
        if not self._client:
            return

        log.info("Closing Discord connection")

        try:
            await self._client.close()
        except Exception as e:
            log.warning(f"Discord close error ignored: {e}")

        self._client = None
        self._ready_event.clear()
