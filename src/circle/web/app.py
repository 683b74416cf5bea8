"""aiohttp application factory and server runner."""

import asyncio
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from aiohttp import web

from circle.billing.checkout import CheckoutService
from circle.billing.referrals import ReferralService
from circle.billing.reports import BillingReports
from circle.billing.webhooks import WebhookIngress
from circle.config.settings import RuntimeSettings
from circle.discord_bot.bot import CircleBot
from circle.drip.campaign import DripCampaign
from circle.drip.store import LeadStore
from circle.linking.flow import LinkingFlow
from circle.scheduler.reconcile import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the route handlers need, wired once at startup."""

    settings: RuntimeSettings
    bot: CircleBot
    webhooks: WebhookIngress
    linking: LinkingFlow
    reconciler: Reconciler
    checkout: CheckoutService
    referrals: ReferralService
    reports: BillingReports
    leads: LeadStore
    drip: DripCampaign


SERVICES = web.AppKey("services", Services)


def services_of(request: web.Request) -> Services:
    return request.app[SERVICES]


def base_url(request: web.Request) -> str:
    """Configured public base URL, else derived from proxy headers."""
    configured = services_of(request).settings.public_base_url
    if configured:
        return configured
    proto = request.headers.get("X-Forwarded-Proto", request.scheme).split(",")[0].strip()
    host = request.headers.get("X-Forwarded-Host") or request.host
    return f"{proto}://{host}"


def token_matches(presented: Optional[str], expected: str) -> bool:
    """Constant-time shared-secret check. An unset secret matches nothing."""
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def cors_middleware(allowed_origins: list[str]):
    allowed = set(allowed_origins)

    @web.middleware
    async def middleware(request: web.Request, handler):
        origin = request.headers.get("Origin")
        is_api = request.path.startswith("/api/")
        if is_api and request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)
        if is_api and origin in allowed:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
            response.headers["Vary"] = "Origin"
        return response

    return middleware


def create_app(services: Services, cors_allowed_origins: Optional[list[str]] = None) -> web.Application:
    """Create the aiohttp application with every route registered."""
    from circle.web import admin, api, oauth, pages, webhook

    app = web.Application(middlewares=[cors_middleware(cors_allowed_origins or [])])
    app[SERVICES] = services

    app.router.add_post("/stripe/webhook", webhook.stripe_webhook)

    app.router.add_get("/oauth/discord/start", oauth.oauth_start)
    app.router.add_get("/oauth/discord/callback", oauth.oauth_callback)
    app.router.add_get("/link", oauth.link_by_email)

    app.router.add_post("/admin/resync", admin.resync)
    app.router.add_get("/admin/unlinked-customers", admin.unlinked_customers)
    app.router.add_get("/admin/create-invite", admin.create_invite)

    app.router.add_post("/api/create-checkout-session", api.create_checkout_session)
    app.router.add_post("/api/referral/generate", api.referral_generate)
    app.router.add_get("/api/referral/verify/{code}", api.referral_verify)
    app.router.add_post("/api/referral/complete", api.referral_complete)
    app.router.add_post("/api/capture", api.capture_lead)
    app.router.add_get("/api/unsubscribe", api.unsubscribe)
    app.router.add_post("/api/drip/run", api.drip_run)
    app.router.add_get("/api/drip/status", api.drip_status)
    app.router.add_get("/api/stats", api.stats)

    app.router.add_get("/portal", pages.portal)
    app.router.add_get("/success", pages.success)
    app.router.add_get("/healthz", pages.healthz)

    return app


async def run_server(
    services: Services,
    port: int,
    cors_allowed_origins: Optional[list[str]] = None,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve until shutdown_event is set (or forever without one)."""
    app = create_app(services, cors_allowed_origins)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    logger.info(f"HTTP server listening on port {port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down HTTP server...")
    await runner.cleanup()
