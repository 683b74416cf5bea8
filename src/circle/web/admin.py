"""Admin routes guarded by the scheduler token."""

import logging

import discord
from aiohttp import web

from circle.billing.client import BillingQueryError
from circle.discord_bot.invites import NoInviteChannelError, create_permanent_invite
from circle.web.app import services_of, token_matches

logger = logging.getLogger(__name__)


def _unauthorized() -> web.Response:
    return web.Response(status=401, text="unauthorized")


async def resync(request: web.Request) -> web.Response:
    """POST /admin/resync with X-CRON-SECRET."""
    services = services_of(request)
    if not token_matches(request.headers.get("X-CRON-SECRET"), services.settings.scheduler_token):
        return _unauthorized()

    try:
        result = await services.reconciler.resync()
    except Exception as e:
        logger.exception(f"Resync failed: {e}")
        return web.Response(status=500, text="resync failed")
    return web.json_response(result.to_dict())


async def unlinked_customers(request: web.Request) -> web.Response:
    """GET /admin/unlinked-customers?token=."""
    services = services_of(request)
    if not token_matches(request.query.get("token"), services.settings.scheduler_token):
        return _unauthorized()

    try:
        customers = await services.reports.unlinked_customers()
    except BillingQueryError as e:
        return web.json_response({"error": str(e)}, status=500)
    return web.json_response(
        {"count": len(customers), "customers": [c.to_dict() for c in customers]}
    )


async def create_invite(request: web.Request) -> web.Response:
    """GET /admin/create-invite?token=."""
    services = services_of(request)
    if not token_matches(request.query.get("token"), services.settings.scheduler_token):
        return _unauthorized()
    if not services.bot.is_gateway_ready:
        return web.json_response({"error": "Discord bot not ready"}, status=503)

    try:
        invite = await create_permanent_invite(services.bot)
    except NoInviteChannelError as e:
        return web.json_response(
            {"error": str(e), "availableChannels": e.channel_names}, status=500
        )
    except (discord.HTTPException, RuntimeError) as e:
        logger.error(f"create-invite failed: {e}")
        return web.json_response({"error": str(e)}, status=500)

    return web.json_response(
        {
            "success": True,
            "inviteUrl": invite.url,
            "inviteCode": invite.code,
            "channel": invite.channel,
            "expiresAt": invite.expires_at or "Never",
            "maxUses": invite.max_uses or "Unlimited",
        }
    )
