"""Small HTML pages, the portal redirect and the health check."""

import logging
from html import escape
from urllib.parse import quote

from aiohttp import web

from circle.billing.checkout import CheckoutError
from circle.billing.client import BillingQueryError
from circle.web.app import base_url, services_of

logger = logging.getLogger(__name__)


def render_page(title: str, body_html: str, status: int = 200) -> web.Response:
    """Minimal HTML page. body_html must already be escaped."""
    html = (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">"
        f"<title>{escape(title)}</title></head>"
        "<body style=\"font-family:system-ui,sans-serif;max-width:520px;margin:48px auto;padding:0 16px;\">"
        f"<h1>{escape(title)}</h1>{body_html}</body></html>"
    )
    return web.Response(status=status, text=html, content_type="text/html")


def error_page(message: str, status: int) -> web.Response:
    return render_page("Something went wrong", f"<p>{escape(message)}</p>", status=status)


async def success(request: web.Request) -> web.Response:
    """GET /success?code= (post-checkout page with the Discord link button)."""
    code = request.query.get("session_id") or request.query.get("code")
    if not code:
        return web.Response(status=400, text="session_id or code is required")

    base = base_url(request)
    encoded = quote(code, safe="")
    link_url = f"{base}/oauth/discord/start?code={encoded}"
    portal_url = f"{base}/portal?code={encoded}"
    invite_url = services_of(request).settings.discord_guild_invite_url

    body = (
        "<p>Thank you for subscribing.</p>"
        "<ol>"
        f"<li><a href=\"{escape(invite_url)}\">Join the Discord server</a></li>"
        f"<li><a href=\"{escape(link_url)}\">Link your Discord account</a></li>"
        "</ol>"
        f"<p><a href=\"{escape(portal_url)}\">Manage your subscription</a></p>"
    )
    return render_page("Payment complete", body)


async def portal(request: web.Request) -> web.Response:
    """GET /portal?email= or ?code= (redirect to the Stripe Billing Portal)."""
    email = request.query.get("email")
    code = request.query.get("code")
    try:
        url = await services_of(request).checkout.portal_url(
            base_url(request), email=email, code=code
        )
    except CheckoutError as e:
        return error_page(e.message, e.status)
    except BillingQueryError as e:
        logger.error(f"Portal session failed: {e}")
        return error_page("Failed to create portal session", 500)

    raise web.HTTPFound(url)


async def healthz(request: web.Request) -> web.Response:
    bot = services_of(request).bot
    return web.json_response({"ok": True, "discord": bot.gateway_state.value})
