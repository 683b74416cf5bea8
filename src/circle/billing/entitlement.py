"""Entitlement evaluation from live Stripe subscription state.

A customer is entitled when any subscription carrying an entitled price is
active or trialing and not scheduled to cancel. Pending cancellation
revokes immediately rather than at period end.
"""

import logging
from collections.abc import Iterable
from typing import Any

from circle.billing.client import BillingClient, BillingQueryError, price_ids_of
from circle.db.models import ENTITLING_STATUSES

logger = logging.getLogger(__name__)

__all__ = [
    "BillingQueryError",
    "EntitlementEvaluator",
    "evaluate_subscriptions",
    "subscription_counts",
]


def subscription_counts(subscription: Any, entitled_price_ids: frozenset[str]) -> bool:
    """True if any line item references an entitled price."""
    return any(pid in entitled_price_ids for pid in price_ids_of(subscription))


def subscription_grants_access(subscription: Any) -> bool:
    return (
        subscription.get("status") in ENTITLING_STATUSES
        and not subscription.get("cancel_at_period_end", False)
    )


def evaluate_subscriptions(
    subscriptions: Iterable[Any],
    entitled_price_ids: frozenset[str],
) -> bool:
    """OR across counting subscriptions of (entitling status AND no pending cancel)."""
    return any(
        subscription_grants_access(sub)
        for sub in subscriptions
        if subscription_counts(sub, entitled_price_ids)
    )


class EntitlementEvaluator:
    """Answers "should this customer hold the role right now"."""

    def __init__(self, billing: BillingClient, entitled_price_ids: frozenset[str]):
        self.billing = billing
        self.entitled_price_ids = entitled_price_ids

    async def is_entitled(self, customer_id: str) -> bool:
        """Query Stripe and evaluate.

        Raises:
            BillingQueryError: If Stripe could not be queried. No default
                is substituted; the caller retries or reports failure.
        """
        subscriptions = await self.billing.list_subscriptions(customer_id, status="all")
        entitled = evaluate_subscriptions(subscriptions, self.entitled_price_ids)
        logger.debug(
            f"Customer {customer_id}: {len(subscriptions)} subscriptions, entitled={entitled}"
        )
        return entitled
