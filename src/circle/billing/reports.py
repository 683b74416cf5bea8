"""Admin and public reports built from live Stripe data."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from circle.billing.client import BillingClient, customer_id_of
from circle.billing.entitlement import subscription_counts
from circle.db.models import SubscriptionStatus
from circle.linking.store import IdentityLinkStore

logger = logging.getLogger(__name__)


@dataclass
class UnlinkedCustomer:
    customer_id: str
    email: Optional[str]
    name: str
    subscription_created: datetime
    hours_since_creation: int

    def to_dict(self) -> dict:
        return {
            "customerId": self.customer_id,
            "email": self.email,
            "name": self.name,
            "subscriptionCreated": self.subscription_created.isoformat(),
            "hoursSinceCreation": self.hours_since_creation,
        }


class BillingReports:
    def __init__(
        self,
        billing: BillingClient,
        links: IdentityLinkStore,
        entitled_price_ids: frozenset[str],
        unlinked_grace_hours: int = 24,
    ):
        self.billing = billing
        self.links = links
        self.entitled_price_ids = entitled_price_ids
        self.grace = timedelta(hours=unlinked_grace_hours)

    async def unlinked_customers(self, now: Optional[datetime] = None) -> list[UnlinkedCustomer]:
        """Paying customers who still have not linked Discord after the grace period.

        Raises:
            BillingQueryError: On Stripe errors
        """
        now = now or datetime.now(timezone.utc)
        subscriptions = await self.billing.list_subscriptions(
            status=SubscriptionStatus.ACTIVE.value, expand=["data.customer"]
        )
        linked = await self.links.linked_customer_ids()

        found: dict[str, UnlinkedCustomer] = {}
        for sub in subscriptions:
            customer = sub.get("customer")
            customer_id = customer_id_of(sub)
            if not customer_id or customer_id in linked or customer_id in found:
                continue
            created = datetime.fromtimestamp(sub["created"], tz=timezone.utc)
            age = now - created
            if age < self.grace:
                continue
            expanded = customer if not isinstance(customer, str) else {}
            found[customer_id] = UnlinkedCustomer(
                customer_id=customer_id,
                email=expanded.get("email"),
                name=expanded.get("name") or "",
                subscription_created=created,
                hours_since_creation=int(age.total_seconds() // 3600),
            )

        logger.info(f"Found {len(found)} unlinked customers ({self.grace} grace)")
        return list(found.values())

    async def active_member_count(self) -> int:
        """Active subscriptions that hold an entitled price.

        Raises:
            BillingQueryError: On Stripe errors
        """
        subscriptions = await self.billing.list_subscriptions(status=SubscriptionStatus.ACTIVE.value)
        return sum(1 for sub in subscriptions if subscription_counts(sub, self.entitled_price_ids))
