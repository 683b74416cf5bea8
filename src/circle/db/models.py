"""Table-name constants and column-value enums."""

from enum import Enum


class Table:
    """Database table names."""

    IDENTITY_LINKS = "identity_links"
    LINK_CODES = "link_codes"
    CUSTOMER_SNAPSHOTS = "customer_snapshots"
    REFERRAL_CODES = "referral_codes"
    PROCESSED_EVENTS = "processed_events"
    LEADS = "leads"
    DRIP_RUNS = "drip_runs"
    SCHEMA_MIGRATIONS = "schema_migrations"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status values."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


# Statuses that grant access when the price is entitled
ENTITLING_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


class LeadStatus(str, Enum):
    """Drip campaign lead status."""

    NEW = "new"
    UNSUBSCRIBED = "unsubscribed"


class EventType(str, Enum):
    """Stripe webhook event types handled by the ingress."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
