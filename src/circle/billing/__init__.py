"""Stripe billing: client wrapper, entitlement, webhooks, checkout, referrals."""

from circle.billing.client import BillingClient, BillingQueryError
from circle.billing.entitlement import EntitlementEvaluator, evaluate_subscriptions

__all__ = [
    "BillingClient",
    "BillingQueryError",
    "EntitlementEvaluator",
    "evaluate_subscriptions",
]
