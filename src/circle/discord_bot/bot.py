"""Discord gateway client lifecycle.

The bot only needs guild and member intents: it resolves members, flips
the entitlement role and creates invites. It owns its connection state so
callers ask the bot whether it is ready instead of checking a loose flag.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import discord

logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    """Connection state of the gateway client."""

    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


class CircleBot(discord.Client):
    """Gateway client for role management in one guild."""

    def __init__(self, token: str, guild_id: Optional[int]):
        intents = discord.Intents.none()
        intents.guilds = True
        intents.members = True

        super().__init__(intents=intents)

        self.token = token
        self.guild_id = guild_id
        self.gateway_state = GatewayState.IDLE
        self._task: Optional[asyncio.Task] = None

    @property
    def is_gateway_ready(self) -> bool:
        return self.gateway_state is GatewayState.READY

    async def on_ready(self) -> None:
        logger.info(f"Bot connected as {self.user}")
        self.gateway_state = GatewayState.READY

    async def on_resumed(self) -> None:
        self.gateway_state = GatewayState.READY

    async def on_disconnect(self) -> None:
        if self.gateway_state is GatewayState.READY:
            logger.warning("Gateway disconnected, waiting for resume")
            self.gateway_state = GatewayState.CONNECTING

    async def on_error(self, event: str, *args, **kwargs) -> None:
        logger.exception(f"Error in event {event}")

    def init(self) -> None:
        """Start the gateway connection in the background.

        Without a token the bot stays IDLE and role sync degrades to
        best-effort calls that will fail and be retried by the sweep.
        """
        if not self.token:
            logger.warning("Discord bot token not configured, skipping login")
            return

        self.gateway_state = GatewayState.CONNECTING
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self.start(self.token)
        except discord.LoginFailure as e:
            self.gateway_state = GatewayState.FAILED
            logger.error(f"Discord login failed: {e}")
        except discord.DiscordException as e:
            self.gateway_state = GatewayState.FAILED
            logger.error(f"Discord gateway stopped: {e}")

    async def resolve_guild(self) -> discord.Guild:
        """The configured guild, from cache or over HTTP.

        Raises:
            RuntimeError: If no guild is configured
            discord.HTTPException: On Discord API errors
        """
        if self.guild_id is None:
            raise RuntimeError("discord_guild_id not configured")
        return self.get_guild(self.guild_id) or await self.fetch_guild(self.guild_id)

    async def shutdown(self) -> None:
        """Close the gateway and wait for the background task."""
        if self.gateway_state is not GatewayState.IDLE:
            logger.info("Shutting down bot...")
            await self.close()
        self.gateway_state = GatewayState.CLOSED

        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Bot task did not complete within timeout")
                self._task.cancel()
            self._task = None
