"""Discord OAuth start and callback routes, plus the e-mail re-link entry."""

import logging
from html import escape

from aiohttp import web

from circle.billing.client import BillingQueryError
from circle.linking.flow import LinkingError, RelinkError
from circle.web.app import base_url, services_of
from circle.web.pages import error_page, render_page

logger = logging.getLogger(__name__)

LINK_FORM = (
    "<p>Enter the e-mail address you subscribed with.</p>"
    "<form method=\"get\" action=\"/link\">"
    "<input type=\"email\" name=\"email\" required placeholder=\"you@example.com\"> "
    "<button type=\"submit\">Link Discord</button>"
    "</form>"
)


async def link_by_email(request: web.Request) -> web.Response:
    """GET /link?email= (resume linking for a paying member; no e-mail shows a form)."""
    email = request.query.get("email", "").strip()
    if not email:
        return render_page("Link your Discord account", LINK_FORM)

    try:
        url = await services_of(request).linking.relink_by_email(email, base_url(request))
    except RelinkError as e:
        logger.info(f"Re-link refused ({e.status}): {e.reason}")
        return error_page(e.reason, e.status)
    except BillingQueryError as e:
        logger.error(f"Re-link lookup failed: {e}")
        return error_page("Something went wrong. Please try again later.", 500)
    raise web.HTTPFound(url)


async def oauth_start(request: web.Request) -> web.Response:
    """GET /oauth/discord/start?code=<checkout session id>."""
    code = request.query.get("code", "")
    try:
        url = services_of(request).linking.start(code, base_url(request))
    except LinkingError as e:
        logger.error(f"OAuth start rejected: {e}")
        return web.Response(status=400, text=e.reason)
    raise web.HTTPFound(url)


async def oauth_callback(request: web.Request) -> web.Response:
    """GET /oauth/discord/callback?code&state (or ?error&error_description)."""
    error = request.query.get("error")
    if error:
        description = request.query.get("error_description", "")
        logger.error(f"Discord OAuth error: {error} {description}")
        message = f"Discord OAuth Error: {error}" + (f" - {description}" if description else "")
        return error_page(message, 400)

    services = services_of(request)
    try:
        outcome = await services.linking.complete(
            request.query.get("code", ""),
            request.query.get("state", ""),
            base_url(request),
        )
    except LinkingError as e:
        if e.is_client_error:
            return error_page(e.reason, 400)
        return error_page("Linking failed. Please try again from the link in your e-mail.", 500)

    invite_url = services.settings.discord_guild_invite_url
    status_line = (
        "Your member role has been granted."
        if outcome.entitled
        else "Your account is linked. The member role will follow once your subscription is active."
    )
    body = (
        f"<p>{escape(status_line)}</p>"
        f"<p><a href=\"{escape(invite_url)}\">Open the Discord server</a></p>"
    )
    return render_page("Setup complete", body)
