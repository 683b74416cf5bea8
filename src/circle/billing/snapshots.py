"""Reporting snapshot of each customer's latest subscription state."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg

from circle.billing.client import BillingClient, BillingQueryError, customer_id_of, price_ids_of
from circle.db.models import Table

logger = logging.getLogger(__name__)


def _price_names(subscription: Any) -> list[str]:
    names = []
    for item in (subscription.get("items") or {}).get("data", []):
        price = item.get("price") or {}
        name = price.get("nickname") or price.get("id")
        if name:
            names.append(name)
    return names


def _period_end(subscription: Any) -> Optional[datetime]:
    ts = subscription.get("current_period_end")
    if not ts:
        # Newer API versions carry the period on the items
        items = (subscription.get("items") or {}).get("data", [])
        ts = items[0].get("current_period_end") if items else None
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


class CustomerSnapshotStore:
    """customer_snapshots table. Never consulted for entitlement decisions."""

    def __init__(self, pool: asyncpg.Pool, billing: BillingClient):
        self.pool = pool
        self.billing = billing

    async def upsert(
        self,
        subscription: Any,
        entitled: bool,
        discord_user_ids: list[str],
    ) -> None:
        """Write the snapshot for the subscription's customer.

        An empty discord_user_ids keeps the previously stored list.

        Raises:
            asyncpg.PostgresError: On database errors
        """
        customer_id = customer_id_of(subscription)
        if not customer_id:
            logger.warning(f"Snapshot skipped, subscription {subscription.get('id')} has no customer")
            return

        email = None
        try:
            customer = await self.billing.retrieve_customer(customer_id)
            email = customer.get("email")
        except BillingQueryError as e:
            logger.error(f"Snapshot: failed to fetch customer {customer_id}: {e}")

        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.CUSTOMER_SNAPSHOTS} (
                    customer_id, subscription_id, status, cancel_at_period_end,
                    current_period_end, price_ids, product_names, email, entitled,
                    linked_discord_user_ids, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, now())
                ON CONFLICT (customer_id) DO UPDATE SET
                    subscription_id = EXCLUDED.subscription_id,
                    status = EXCLUDED.status,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    current_period_end = EXCLUDED.current_period_end,
                    price_ids = EXCLUDED.price_ids,
                    product_names = EXCLUDED.product_names,
                    email = COALESCE(EXCLUDED.email, {Table.CUSTOMER_SNAPSHOTS}.email),
                    entitled = EXCLUDED.entitled,
                    linked_discord_user_ids = CASE
                        WHEN cardinality(EXCLUDED.linked_discord_user_ids) > 0
                        THEN EXCLUDED.linked_discord_user_ids
                        ELSE {Table.CUSTOMER_SNAPSHOTS}.linked_discord_user_ids
                    END,
                    updated_at = now()
                """,
                customer_id,
                subscription.get("id"),
                subscription.get("status"),
                bool(subscription.get("cancel_at_period_end")),
                _period_end(subscription),
                price_ids_of(subscription),
                _price_names(subscription),
                email,
                entitled,
                list(discord_user_ids),
            )
        logger.debug(f"Snapshot updated for {customer_id} (entitled={entitled})")
