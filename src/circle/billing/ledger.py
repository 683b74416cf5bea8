"""Processed-event ledger for webhook dedupe."""

import logging

import asyncpg

from circle.db.models import Table

logger = logging.getLogger(__name__)


class EventLedger:
    """Claims Stripe event ids so a redelivered event runs at most once.

    The id is claimed before processing. When processing fails the claim is
    released, so Stripe's retry is processed again instead of skipped.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def claim(self, event_id: str, event_type: str) -> bool:
        """Record the event. False if it was already claimed."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.PROCESSED_EVENTS} (event_id, event_type, processed_at)
                VALUES ($1, $2, now())
                ON CONFLICT (event_id) DO NOTHING
                RETURNING event_id
                """,
                event_id,
                event_type,
            )
        return row is not None

    async def release(self, event_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"DELETE FROM {Table.PROCESSED_EVENTS} WHERE event_id = $1",
                event_id,
            )
        logger.info(f"Released ledger claim for {event_id}")
