"""Persistence for identity links and checkout link codes.

Writes are column-scoped upserts: a statement only touches the columns it
names, so concurrent handlers converge instead of clobbering each other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from circle.db.models import Table

logger = logging.getLogger(__name__)


@dataclass
class IdentityLink:
    """Discord user ↔ Stripe customer binding."""

    discord_user_id: str
    customer_id: Optional[str]
    linked_at: datetime
    updated_at: datetime
    last_sync_at: Optional[datetime] = None


@dataclass
class LinkCode:
    """Checkout session → customer bridge used during OAuth linking."""

    code: str
    customer_id: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class IdentityLinkStore:
    """identity_links and link_codes tables."""

    def __init__(self, pool: asyncpg.Pool, link_code_ttl_days: int = 14):
        self.pool = pool
        self.link_code_ttl = timedelta(days=link_code_ttl_days)

    async def upsert_link(self, discord_user_id: str, customer_id: str) -> None:
        """Create or re-point a link. last_sync_at is left alone."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.IDENTITY_LINKS}
                    (discord_user_id, customer_id, linked_at, updated_at)
                VALUES ($1, $2, now(), now())
                ON CONFLICT (discord_user_id) DO UPDATE SET
                    customer_id = EXCLUDED.customer_id,
                    linked_at = EXCLUDED.linked_at,
                    updated_at = now()
                """,
                discord_user_id,
                customer_id,
            )
        logger.info(f"Linked discord user {discord_user_id} to customer {customer_id}")

    async def find_links_by_billing_identity(self, customer_id: str) -> list[str]:
        """Discord user ids linked to a customer. Empty is a normal answer."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT discord_user_id
                FROM {Table.IDENTITY_LINKS}
                WHERE customer_id = $1
                ORDER BY discord_user_id
                """,
                customer_id,
            )
        return [row["discord_user_id"] for row in rows]

    async def list_links(self) -> list[IdentityLink]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT discord_user_id, customer_id, linked_at, updated_at, last_sync_at
                FROM {Table.IDENTITY_LINKS}
                ORDER BY linked_at
                """
            )
        return [IdentityLink(**dict(row)) for row in rows]

    async def linked_customer_ids(self) -> set[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT DISTINCT customer_id
                FROM {Table.IDENTITY_LINKS}
                WHERE customer_id IS NOT NULL
                """
            )
        return {row["customer_id"] for row in rows}

    async def mark_synced(self, discord_user_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.IDENTITY_LINKS}
                SET last_sync_at = now(), updated_at = now()
                WHERE discord_user_id = $1
                """,
                discord_user_id,
            )

    async def touch(self, discord_user_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {Table.IDENTITY_LINKS} SET updated_at = now() WHERE discord_user_id = $1",
                discord_user_id,
            )

    async def record_link_code(self, code: str, customer_id: str) -> None:
        """Idempotent upsert of a link code.

        A repeat only refreshes customer_id; created_at, expires_at and used
        keep their first-write values.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.LINK_CODES} (code, customer_id, created_at, expires_at)
                VALUES ($1, $2, now(), now() + $3::interval)
                ON CONFLICT (code) DO UPDATE SET
                    customer_id = EXCLUDED.customer_id
                """,
                code,
                customer_id,
                self.link_code_ttl,
            )

    async def get_link_code(self, code: str) -> Optional[LinkCode]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT code, customer_id, created_at, expires_at, used, used_at
                FROM {Table.LINK_CODES}
                WHERE code = $1
                """,
                code,
            )
        return LinkCode(**dict(row)) if row else None

    async def mark_link_code_used(self, code: str) -> None:
        # Advisory only: re-linking with the same code stays allowed
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.LINK_CODES}
                SET used = TRUE, used_at = COALESCE(used_at, now())
                WHERE code = $1
                """,
                code,
            )
