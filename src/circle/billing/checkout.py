"""Checkout session creation and Billing Portal redirects."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

from circle.billing.client import BillingClient, BillingQueryError, customer_id_of
from circle.billing.entitlement import subscription_counts
from circle.billing.referrals import ReferralService
from circle.billing.webhooks import has_used_trial
from circle.config.settings import PriceCatalog

logger = logging.getLogger(__name__)

TRIAL_REUSE_WARNING = (
    "This e-mail address has already used a free trial. "
    "The subscription will be billed at the regular price."
)


class CheckoutError(ValueError):
    """Checkout request cannot be served; `code` is returned to the client."""

    def __init__(self, code: str, message: str, status: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


class DuplicateSubscriptionError(CheckoutError):
    """The customer already holds an active entitled subscription."""

    def __init__(self, customer_id: str):
        super().__init__(
            "duplicate_subscription",
            "An active subscription already exists for this e-mail address. "
            "Multiple subscriptions are not allowed.",
        )
        self.customer_id = customer_id


@dataclass
class CheckoutResult:
    url: str
    session_id: str
    warnings: list[str] = field(default_factory=list)


def is_student_email(email: str, student_domains: tuple[str, ...]) -> bool:
    email = (email or "").strip().lower()
    return bool(email) and any(email.endswith(domain) for domain in student_domains)


class CheckoutService:
    """Creates subscription checkout sessions behind a duplicate guard."""

    def __init__(
        self,
        billing: BillingClient,
        prices: PriceCatalog,
        student_domains: tuple[str, ...],
        referrals: Optional[ReferralService] = None,
    ):
        self.billing = billing
        self.prices = prices
        self.student_domains = student_domains
        self.referrals = referrals

    def default_price(self, email: str) -> str:
        if is_student_email(email, self.student_domains):
            logger.info(f"Student e-mail detected: {email}, using student price")
            return self.prices.student
        return self.prices.monthly

    async def _resolve_customer(self, email: str, company_name: Optional[str]) -> Optional[Any]:
        customer = await self.billing.find_customer_by_email(email)
        name = (company_name or "").strip()
        if not name:
            return customer
        # Set the name first so it lands on the first invoice
        if customer is not None:
            customer = await self.billing.update_customer(customer["id"], name=name)
            logger.info(f"Updated customer {customer['id']} name to {name!r}")
        else:
            customer = await self.billing.create_customer(email, name=name)
            logger.info(f"Created customer {customer['id']} with name {name!r}")
        return customer

    async def _referral_discount(self, referral_code: str) -> Optional[str]:
        if self.referrals is None:
            return None
        try:
            return await self.referrals.new_member_coupon(referral_code)
        except BillingQueryError as e:
            logger.warning(f"Referral coupon for {referral_code} failed: {e}")
            return None

    async def create_session(
        self,
        email: str,
        base_url: str,
        price_id: Optional[str] = None,
        mode: Optional[str] = None,
        company_name: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> CheckoutResult:
        """Create a Checkout Session for one subscription.

        Raises:
            CheckoutError: If e-mail or price is missing
            DuplicateSubscriptionError: If the customer is already subscribed
            BillingQueryError: On Stripe errors
        """
        email = (email or "").strip()
        if not email:
            raise CheckoutError("email_required", "Email is required")

        selected_price = price_id or self.default_price(email)
        if not selected_price:
            raise CheckoutError("price_not_configured", "No price configured", status=500)

        customer = await self._resolve_customer(email, company_name)
        warnings: list[str] = []

        if customer is not None:
            active = await self.billing.list_subscriptions(customer["id"], status="active")
            entitled_ids = self.prices.entitled
            if any(subscription_counts(sub, entitled_ids) for sub in active):
                logger.info(f"Duplicate subscription blocked for customer {customer['id']}")
                raise DuplicateSubscriptionError(customer["id"])
            if has_used_trial(customer):
                logger.info(f"Customer {customer['id']} has already used a trial")
                warnings.append(TRIAL_REUSE_WARNING)

        base = base_url.rstrip("/")
        metadata = {"source": "api_checkout"}
        if referral_code:
            metadata["referral_code"] = referral_code

        params: dict[str, Any] = {
            "mode": mode or "subscription",
            "line_items": [{"price": selected_price, "quantity": 1}],
            "billing_address_collection": "required",
            "allow_promotion_codes": True,
            "success_url": f"{base}/oauth/discord/start?code={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/?canceled=true",
            "metadata": metadata,
        }
        if customer is not None:
            params["customer"] = customer["id"]
        else:
            params["customer_email"] = email

        if referral_code:
            coupon_id = await self._referral_discount(referral_code)
            if coupon_id:
                # Stripe rejects discounts together with promotion codes
                params["discounts"] = [{"coupon": coupon_id}]
                del params["allow_promotion_codes"]

        session = await self.billing.create_checkout_session(params)
        logger.info(f"Created checkout session {session['id']} for {email}")
        return CheckoutResult(url=session["url"], session_id=session["id"], warnings=warnings)

    async def portal_url(
        self,
        base_url: str,
        email: Optional[str] = None,
        code: Optional[str] = None,
    ) -> str:
        """Billing Portal URL for a customer found by checkout code or e-mail.

        Raises:
            CheckoutError: If neither is given or no customer matches
            BillingQueryError: On Stripe errors
        """
        base = base_url.rstrip("/")
        if code:
            session = await self.billing.retrieve_checkout_session(code)
            customer_id = customer_id_of(session)
            return_url = f"{base}/success?code={quote(code, safe='')}"
        elif email:
            customer = await self.billing.find_customer_by_email(email.strip())
            customer_id = customer["id"] if customer is not None else None
            return_url = f"{base}/"
        else:
            raise CheckoutError("email_or_code_required", "email or code is required")

        if not customer_id:
            raise CheckoutError("customer_not_found", "No customer found", status=404)

        portal = await self.billing.create_portal_session(customer_id, return_url)
        return portal["url"]
