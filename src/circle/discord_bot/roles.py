"""Entitlement role synchronization for guild members."""

import asyncio
import logging
from enum import Enum
from typing import Optional

import discord

from circle.discord_bot.bot import CircleBot

logger = logging.getLogger(__name__)


class RoleAction(str, Enum):
    """What ensure_role did."""

    ADD = "add"
    REMOVE = "remove"
    NONE = "none"
    SKIPPED = "skipped"  # not a guild member (yet)


class RoleSynchronizer:
    """Reconciles one role in one guild with a target boolean.

    Calls are idempotent: the member is fetched fresh over HTTP and Discord
    is only written to when its role set differs from the target.
    """

    def __init__(self, bot: CircleBot, role_id: Optional[int], ready_delay: float = 2.0):
        self.bot = bot
        self.role_id = role_id
        self.ready_delay = ready_delay

    async def _resolve_member(self, guild: discord.Guild, discord_user_id: str) -> Optional[discord.Member]:
        if not discord_user_id.isdigit():
            return None
        # The gateway cache lags role edits until GUILD_MEMBER_UPDATE arrives.
        try:
            return await guild.fetch_member(int(discord_user_id))
        except discord.NotFound:
            return None

    async def ensure_role(self, discord_user_id: str, should_hold: bool, reason: str) -> RoleAction:
        """Make the member's role state equal should_hold.

        Args:
            discord_user_id: Discord user id (snowflake as text)
            should_hold: Target role state
            reason: Trigger tag, written to the audit log and our logs

        Returns:
            The action taken

        Raises:
            RuntimeError: If no role is configured
            discord.HTTPException: On Discord API errors other than unknown member
        """
        if self.role_id is None:
            raise RuntimeError("discord_pro_role_id not configured")

        if not self.bot.is_gateway_ready:
            logger.warning(
                f"Discord not ready ({self.bot.gateway_state.value}), "
                f"delaying {self.ready_delay}s"
            )
            await asyncio.sleep(self.ready_delay)

        guild = await self.bot.resolve_guild()
        member = await self._resolve_member(guild, discord_user_id)

        if member is None:
            action = RoleAction.SKIPPED
        else:
            has_role = member.get_role(self.role_id) is not None
            if should_hold and not has_role:
                await member.add_roles(discord.Object(id=self.role_id), reason=reason)
                action = RoleAction.ADD
            elif not should_hold and has_role:
                await member.remove_roles(discord.Object(id=self.role_id), reason=reason)
                action = RoleAction.REMOVE
            else:
                action = RoleAction.NONE

        logger.info(
            f"Role sync for {discord_user_id}: action={action.value} "
            f"target={should_hold} reason={reason!r}",
            extra={
                "discord_user_id": discord_user_id,
                "role_action": action.value,
                "sync_reason": reason,
            },
        )
        return action
