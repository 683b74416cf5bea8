"""JSON API routes: checkout, referrals, leads, drip and stats."""

import json
import logging
from datetime import datetime, timezone

from aiohttp import web

from circle.billing.checkout import CheckoutError
from circle.billing.client import BillingQueryError
from circle.billing.referrals import ReferralError
from circle.web.app import base_url, services_of, token_matches
from circle.web.pages import render_page

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status)


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid_json", "message": "Body must be JSON"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid_json", "message": "Body must be an object"}),
            content_type="application/json",
        )
    return body


def _bearer_ok(request: web.Request) -> bool:
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else None
    return token_matches(token, services_of(request).settings.scheduler_token)


async def create_checkout_session(request: web.Request) -> web.Response:
    """POST /api/create-checkout-session."""
    body = await _read_json(request)
    try:
        result = await services_of(request).checkout.create_session(
            email=body.get("email") or "",
            base_url=base_url(request),
            price_id=body.get("priceId"),
            mode=body.get("mode"),
            company_name=body.get("companyName"),
            referral_code=body.get("referralCode"),
        )
    except CheckoutError as e:
        return _error(e.code, e.message, e.status)
    except BillingQueryError as e:
        logger.error(f"Checkout session creation failed: {e}")
        return _error("internal_error", "Failed to create checkout session", 500)

    payload = {"url": result.url, "sessionId": result.session_id}
    if result.warnings:
        payload["warnings"] = result.warnings
    return web.json_response(payload)


async def referral_generate(request: web.Request) -> web.Response:
    """POST /api/referral/generate {email}."""
    body = await _read_json(request)
    email = (body.get("email") or "").strip()
    if not email:
        return _error("email_required", "Email is required", 400)

    try:
        referral = await services_of(request).referrals.generate(email)
    except ReferralError as e:
        return _error(e.reason, str(e), 404)
    except BillingQueryError as e:
        logger.error(f"Referral generation failed: {e}")
        return _error("internal_error", "Server error", 500)

    return web.json_response(
        {
            "ok": True,
            "code": referral.code,
            "referrals": referral.referrals,
            "link": f"{base_url(request)}/?ref={referral.code}",
        }
    )


async def referral_verify(request: web.Request) -> web.Response:
    """GET /api/referral/verify/{code}."""
    code = request.match_info["code"]
    referral = await services_of(request).referrals.verify(code)
    if referral is None:
        return _error("invalid_code", "Invalid referral code", 404)
    return web.json_response(
        {
            "ok": True,
            "valid": True,
            "couponId": referral.coupon_id,
            "referrerName": referral.referrer_name,
        }
    )


async def referral_complete(request: web.Request) -> web.Response:
    """POST /api/referral/complete {code, newMemberEmail}."""
    body = await _read_json(request)
    code = body.get("code")
    new_member_email = body.get("newMemberEmail")
    if not code or not new_member_email:
        return _error("missing_parameters", "code and newMemberEmail are required", 400)

    try:
        await services_of(request).referrals.complete(code, new_member_email)
    except ReferralError as e:
        return _error(e.reason, str(e), 404)
    return web.json_response({"ok": True})


async def capture_lead(request: web.Request) -> web.Response:
    """POST /api/capture {email, name?, company?, source?}.

    A new lead gets its first drip step (the welcome mail) right away. A
    failed send does not fail the capture; the next pass retries it.
    """
    body = await _read_json(request)
    email = (body.get("email") or "").strip().lower()
    if not email:
        return _error("email_required", "Email is required", 400)

    services = services_of(request)
    lead, created = await services.leads.capture(
        email,
        name=(body.get("name") or "").strip(),
        company=(body.get("company") or "").strip(),
        source=body.get("source") or "landing_page",
    )
    welcome_sent = False
    if created:
        welcome_sent = await services.drip.process_lead(lead)

    return web.json_response({"ok": True, "created": created, "welcomeSent": welcome_sent})


async def unsubscribe(request: web.Request) -> web.Response:
    """GET /api/unsubscribe?email=."""
    email = (request.query.get("email") or "").strip().lower()
    if not email:
        return web.Response(status=400, text="Invalid request")

    found = await services_of(request).leads.unsubscribe(email)
    logger.info(f"Unsubscribe {email} (known={found})")
    return render_page("Unsubscribed", "<p>The e-mail distribution has been stopped.</p>")


async def drip_run(request: web.Request) -> web.Response:
    """POST /api/drip/run with Authorization: Bearer <token>."""
    if not _bearer_ok(request):
        return web.json_response({"error": "Unauthorized"}, status=401)

    result = await services_of(request).drip.run()
    return web.json_response({"ok": True, "processed": result.processed, "sent": result.sent})


async def drip_status(request: web.Request) -> web.Response:
    """GET /api/drip/status with Authorization: Bearer <token>."""
    if not _bearer_ok(request):
        return web.json_response({"error": "Unauthorized"}, status=401)
    return web.json_response(await services_of(request).drip.status())


async def stats(request: web.Request) -> web.Response:
    """GET /api/stats (public member count)."""
    try:
        members = await services_of(request).reports.active_member_count()
    except BillingQueryError as e:
        logger.error(f"Stats unavailable: {e}")
        return _error("unavailable", "Member count unavailable", 503)

    response = web.json_response(
        {"members": members, "updatedAt": datetime.now(timezone.utc).isoformat()}
    )
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Cache-Control"] = "public, max-age=3600"
    return response
