"""Stripe webhook ingress: verify, dedupe, dispatch."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from aiohttp import web

from circle.billing.client import BillingClient, BillingQueryError, customer_id_of
from circle.billing.entitlement import EntitlementEvaluator
from circle.billing.ledger import EventLedger
from circle.billing.referrals import ReferralError, ReferralService
from circle.billing.snapshots import CustomerSnapshotStore
from circle.db.models import EventType, SubscriptionStatus
from circle.discord_bot.roles import RoleSynchronizer
from circle.linking.store import IdentityLinkStore

logger = logging.getLogger(__name__)

COMPANY_NAME_FIELD = "company_name"


def has_used_trial(customer: Any) -> bool:
    """True if the customer's metadata records a consumed trial."""
    metadata = customer.get("metadata") or {}
    value = metadata.get("trial_used")
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


def company_name_of(session: Any) -> Optional[str]:
    for field in session.get("custom_fields") or []:
        if field.get("key") != COMPANY_NAME_FIELD:
            continue
        value = ((field.get("text") or {}).get("value") or "").strip()
        return value or None
    return None


class WebhookIngress:
    """Turns verified Stripe events into link codes and role syncs."""

    def __init__(
        self,
        billing: BillingClient,
        webhook_secret: str,
        ledger: EventLedger,
        links: IdentityLinkStore,
        evaluator: EntitlementEvaluator,
        roles: RoleSynchronizer,
        snapshots: CustomerSnapshotStore,
        referrals: ReferralService,
    ):
        self.billing = billing
        self.webhook_secret = webhook_secret
        self.ledger = ledger
        self.links = links
        self.evaluator = evaluator
        self.roles = roles
        self.snapshots = snapshots
        self.referrals = referrals

    async def handle(self, payload: bytes, sig_header: Optional[str]) -> web.Response:
        """Verify and process one delivery.

        Returns:
            400 when the delivery cannot be verified, 500 when processing
            failed (Stripe will redeliver), 200 otherwise
        """
        if not sig_header:
            logger.error("Missing Stripe-Signature header")
            return web.Response(status=400, text="Missing signature")
        if not self.webhook_secret:
            logger.error("Webhook secret not configured, rejecting delivery")
            return web.Response(status=400, text="Webhook secret not configured")

        try:
            event = self.billing.construct_event(payload, sig_header, self.webhook_secret)
        except ValueError:
            logger.error("Invalid webhook payload")
            return web.Response(status=400, text="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            return web.Response(status=400, text="Invalid signature")

        event_id = event["id"]
        event_type = event["type"]
        logger.info(f"Received webhook {event_id}: {event_type}")

        if not await self.ledger.claim(event_id, event_type):
            logger.info(f"Event {event_id} already processed, acknowledging")
            return web.json_response({"received": True, "status": "already_processed"})

        try:
            await self.dispatch(event_type, event["data"]["object"])
        except Exception as e:
            logger.exception(f"Error processing webhook {event_type} ({event_id}): {e}")
            await self.ledger.release(event_id)
            # 500 so Stripe retries
            return web.Response(status=500, text="webhook handler error")

        return web.json_response({"received": True})

    async def dispatch(self, event_type: str, obj: Any) -> None:
        if event_type == EventType.CHECKOUT_COMPLETED:
            await self.handle_checkout_completed(obj)
        elif event_type in (EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED):
            await self.handle_subscription_change(obj)
            await self.mark_trial_used(obj)
        elif event_type == EventType.SUBSCRIPTION_DELETED:
            await self.handle_subscription_change(obj)
        else:
            logger.info(f"Unhandled event type: {event_type}")

    async def handle_checkout_completed(self, session: Any) -> None:
        session_id = session["id"]
        customer_id = customer_id_of(session)
        if not customer_id:
            logger.warning(f"Checkout session {session_id} has no customer, skipping link code")
            return

        await self.links.record_link_code(session_id, customer_id)
        logger.info(f"Saved link code for session {session_id}, customer {customer_id}")

        referral_code = (session.get("metadata") or {}).get("referral_code")
        if referral_code:
            details = session.get("customer_details") or {}
            new_email = details.get("email") or session.get("customer_email") or ""
            try:
                await self.referrals.complete(referral_code, new_email)
            except ReferralError as e:
                logger.warning(f"Referral {referral_code} not completed: {e}")
            except Exception as e:
                logger.error(f"Referral processing error for {referral_code}: {e}")

        company_name = company_name_of(session)
        if company_name:
            await self._apply_company_name(customer_id, company_name)

    async def _apply_company_name(self, customer_id: str, company_name: str) -> None:
        """Put the company name on the customer and its latest invoice.

        Draft invoices take it as customer_name; finalized ones only accept
        metadata.
        """
        try:
            await self.billing.update_customer(customer_id, name=company_name)
            logger.info(f"Updated customer {customer_id} name to {company_name!r}")

            invoice = await self.billing.latest_invoice(customer_id)
            if invoice is None:
                return
            if invoice.get("status") == "draft":
                await self.billing.update_invoice(invoice["id"], customer_name=company_name)
                logger.info(f"Updated invoice {invoice['id']} customer_name")
            else:
                await self.billing.update_invoice(
                    invoice["id"], metadata={COMPANY_NAME_FIELD: company_name}
                )
                logger.info(f"Saved company_name to invoice metadata: {invoice['id']}")
        except BillingQueryError as e:
            logger.error(f"Company name update failed for {customer_id}: {e}")

    async def handle_subscription_change(self, subscription: Any) -> bool:
        """Re-evaluate the customer and sync every linked Discord user.

        Returns:
            The computed entitlement

        Raises:
            BillingQueryError: If entitlement cannot be evaluated
            discord.HTTPException: If a role update fails
        """
        customer_id = customer_id_of(subscription)
        if not customer_id:
            logger.warning(f"Subscription {subscription.get('id')} has no customer, skipping")
            return False

        entitled = await self.evaluator.is_entitled(customer_id)
        linked = await self.links.find_links_by_billing_identity(customer_id)

        if not linked:
            # Synced later when the OAuth flow completes
            logger.info(f"No linked discord user yet for customer {customer_id}")
        for discord_user_id in linked:
            await self.roles.ensure_role(
                discord_user_id, entitled, f"webhook subscription change entitle={entitled}"
            )
            await self.links.touch(discord_user_id)

        try:
            await self.snapshots.upsert(subscription, entitled, linked)
        except Exception as e:
            logger.error(f"Customer snapshot upsert failed for {customer_id}: {e}")

        return entitled

    async def mark_trial_used(self, subscription: Any) -> None:
        """Stamp trial usage on the customer once, while a trial is running."""
        if subscription.get("status") != SubscriptionStatus.TRIALING.value:
            return
        trial_end = subscription.get("trial_end")
        now = datetime.now(timezone.utc)
        if not trial_end or trial_end < now.timestamp():
            return
        customer_id = customer_id_of(subscription)
        if not customer_id:
            return

        try:
            customer = await self.billing.retrieve_customer(customer_id)
            if has_used_trial(customer):
                return
            metadata = dict(customer.get("metadata") or {})
            metadata.update(
                {
                    "trial_used": "true",
                    "trial_used_at": now.isoformat(),
                    "trial_subscription_id": subscription["id"],
                }
            )
            await self.billing.update_customer(customer_id, metadata=metadata)
            logger.info(f"Marked trial usage for {customer_id}")
        except BillingQueryError as e:
            logger.error(f"Trial metadata update failed for {customer_id}: {e}")
