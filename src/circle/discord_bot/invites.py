"""Guild invite creation for the admin API."""

import logging
from dataclasses import dataclass
from typing import Optional

import discord

from circle.discord_bot.bot import CircleBot

logger = logging.getLogger(__name__)


class NoInviteChannelError(RuntimeError):
    """The guild has no text channel the bot can create an invite in."""

    def __init__(self, channel_names: list[str]):
        super().__init__("No text channel found")
        self.channel_names = channel_names


@dataclass
class InviteInfo:
    url: str
    code: str
    channel: str
    max_uses: int
    expires_at: Optional[str]


async def create_permanent_invite(bot: CircleBot, reason: str = "Created by admin API") -> InviteInfo:
    """Create a unique, non-expiring, unlimited invite in the first text channel.

    Raises:
        NoInviteChannelError: If the guild has no text channel
        discord.HTTPException: On Discord API errors
    """
    guild = await bot.resolve_guild()
    channels = await guild.fetch_channels()
    text_channels = sorted(
        (ch for ch in channels if isinstance(ch, discord.TextChannel)),
        key=lambda ch: ch.position,
    )
    if not text_channels:
        raise NoInviteChannelError([ch.name for ch in channels])

    channel = text_channels[0]
    invite = await channel.create_invite(max_age=0, max_uses=0, unique=True, reason=reason)
    logger.info(f"Created invite {invite.code} in #{channel.name}")

    return InviteInfo(
        url=invite.url,
        code=invite.code,
        channel=channel.name,
        max_uses=invite.max_uses or 0,
        expires_at=invite.expires_at.isoformat() if invite.expires_at else None,
    )
