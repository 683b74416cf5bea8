"""Discord gateway client, role synchronization and invites."""

from circle.discord_bot.bot import CircleBot, GatewayState
from circle.discord_bot.roles import RoleAction, RoleSynchronizer

__all__ = ["CircleBot", "GatewayState", "RoleAction", "RoleSynchronizer"]
