"""Thin async wrapper around the Stripe SDK.

Every call is a black-box RPC: the blocking SDK request runs in a worker
thread and any stripe.StripeError comes back as BillingQueryError, so
callers deal with one failure type and never see SDK internals.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Optional

import stripe

logger = logging.getLogger(__name__)


class BillingQueryError(RuntimeError):
    """A Stripe request failed; the caller must not guess a result."""


class BillingClient:
    """Stripe client bound to one mode's secret key."""

    def __init__(self, api_key: str):
        self._api_key = api_key
        self._client: Optional[stripe.StripeClient] = None

    def _stripe(self) -> stripe.StripeClient:
        if not self._api_key:
            raise BillingQueryError("Stripe secret key not configured")
        if self._client is None:
            self._client = stripe.StripeClient(self._api_key)
        return self._client

    async def _call(self, description: str, fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(partial(fn, *args, **kwargs))
        except stripe.StripeError as e:
            logger.error(f"Stripe {description} failed: {e}")
            raise BillingQueryError(f"{description} failed: {e}") from e

    # Webhooks -------------------------------------------------------------

    @staticmethod
    def construct_event(payload: bytes, sig_header: str, secret: str) -> Any:
        """Verify a webhook signature and parse the event.

        Raises:
            ValueError: On an unparsable payload
            stripe.SignatureVerificationError: On a bad signature
        """
        return stripe.Webhook.construct_event(payload, sig_header, secret)

    # Subscriptions --------------------------------------------------------

    async def list_subscriptions(
        self,
        customer_id: Optional[str] = None,
        status: str = "all",
        expand: Optional[list[str]] = None,
    ) -> list[Any]:
        """All subscriptions matching the filter, following pagination."""
        params: dict[str, Any] = {"status": status, "limit": 100}
        if customer_id:
            params["customer"] = customer_id
        if expand:
            params["expand"] = expand

        def _fetch():
            page = self._stripe().subscriptions.list(params=params)
            return list(page.auto_paging_iter())

        return await self._call("subscription list", _fetch)

    async def apply_subscription_coupon(self, subscription_id: str, coupon_id: str) -> Any:
        return await self._call(
            "subscription update",
            lambda: self._stripe().subscriptions.update(
                subscription_id, params={"discounts": [{"coupon": coupon_id}]}
            ),
        )

    # Customers ------------------------------------------------------------

    async def find_customer_by_email(self, email: str) -> Optional[Any]:
        page = await self._call(
            "customer lookup",
            lambda: self._stripe().customers.list(params={"email": email, "limit": 1}),
        )
        return page.data[0] if page.data else None

    async def retrieve_customer(self, customer_id: str) -> Any:
        return await self._call(
            "customer retrieve",
            lambda: self._stripe().customers.retrieve(customer_id),
        )

    async def create_customer(self, email: str, name: Optional[str] = None) -> Any:
        params = {"email": email}
        if name:
            params["name"] = name
        return await self._call(
            "customer create",
            lambda: self._stripe().customers.create(params=params),
        )

    async def update_customer(self, customer_id: str, **params: Any) -> Any:
        return await self._call(
            "customer update",
            lambda: self._stripe().customers.update(customer_id, params=params),
        )

    # Checkout / portal ----------------------------------------------------

    async def retrieve_checkout_session(self, session_id: str) -> Any:
        return await self._call(
            "checkout session retrieve",
            lambda: self._stripe().checkout.sessions.retrieve(session_id),
        )

    async def create_checkout_session(self, params: dict[str, Any]) -> Any:
        return await self._call(
            "checkout session create",
            lambda: self._stripe().checkout.sessions.create(params=params),
        )

    async def latest_checkout_session(self, customer_id: str) -> Optional[Any]:
        page = await self._call(
            "checkout session list",
            lambda: self._stripe().checkout.sessions.list(params={"customer": customer_id, "limit": 1}),
        )
        return page.data[0] if page.data else None

    async def create_portal_session(self, customer_id: str, return_url: str) -> Any:
        return await self._call(
            "billing portal session create",
            lambda: self._stripe().billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            ),
        )

    # Coupons / invoices ---------------------------------------------------

    async def create_coupon(self, params: dict[str, Any]) -> Any:
        return await self._call(
            "coupon create",
            lambda: self._stripe().coupons.create(params=params),
        )

    async def latest_invoice(self, customer_id: str) -> Optional[Any]:
        page = await self._call(
            "invoice list",
            lambda: self._stripe().invoices.list(params={"customer": customer_id, "limit": 1}),
        )
        return page.data[0] if page.data else None

    async def update_invoice(self, invoice_id: str, **params: Any) -> Any:
        return await self._call(
            "invoice update",
            lambda: self._stripe().invoices.update(invoice_id, params=params),
        )


def customer_id_of(obj: Any) -> Optional[str]:
    """Customer id from a Stripe object whose `customer` may be expanded."""
    customer = obj.get("customer")
    if customer is None or isinstance(customer, str):
        return customer
    return customer.get("id")


def price_ids_of(subscription: Any) -> list[str]:
    """Price ids of every line item on a subscription."""
    ids = []
    for item in (subscription.get("items") or {}).get("data", []):
        price = item.get("price") or {}
        if price.get("id"):
            ids.append(price["id"])
    return ids
