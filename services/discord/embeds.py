from __future__ import annotations

from datetime import datetime, timezone

import discord

from services.notifications.base import Severity


def _color(severity: Severity) -> discord.Color:
    if severity == Severity.SUCCESS:
        return discord.Color.green()
    if severity == Severity.WARNING:
        return discord.Color.orange()
    if severity == Severity.ERROR:
        return discord.Color.red()
    return discord.Color.blurple()


def notice_embed(message: str, severity: Severity = Severity.INFO) -> discord.Embed:
    embed = discord.Embed(
        title="Shadow Senses",
        description=message,
        color=_color(severity),
    )
    embed.timestamp = datetime.now(timezone.utc)
    embed.set_footer(text=severity.value)
    return embed
