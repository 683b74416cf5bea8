"""POST /stripe/webhook."""

from aiohttp import web

from circle.web.app import services_of


async def stripe_webhook(request: web.Request) -> web.Response:
    # Signature verification needs the raw bytes
    payload = await request.read()
    sig_header = request.headers.get("Stripe-Signature")
    return await services_of(request).webhooks.handle(payload, sig_header)
