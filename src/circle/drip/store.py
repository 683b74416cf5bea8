"""Persistence for drip campaign leads and runs."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import asyncpg

from circle.db.models import LeadStatus, Table

logger = logging.getLogger(__name__)


@dataclass
class Lead:
    email: str
    name: str = ""
    company: str = ""
    source: str = "landing_page"
    status: str = LeadStatus.NEW.value
    captured_at: Optional[datetime] = None
    completed_steps: list[int] = field(default_factory=list)
    current_step: int = 0
    last_sent_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None

    @property
    def unsubscribed(self) -> bool:
        return self.status == LeadStatus.UNSUBSCRIBED.value


def _lead(row) -> Lead:
    data = dict(row)
    data["completed_steps"] = list(data.get("completed_steps") or [])
    return Lead(**data)


_COLUMNS = (
    "email, name, company, source, status, captured_at, completed_steps, "
    "current_step, last_sent_at, unsubscribed_at"
)


class LeadStore:
    """leads and drip_runs tables."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def capture(
        self,
        email: str,
        name: str = "",
        company: str = "",
        source: str = "landing_page",
    ) -> tuple[Lead, bool]:
        """Insert a lead unless one exists. Returns (lead, created)."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.LEADS} (email, name, company, source, status, captured_at)
                VALUES ($1, $2, $3, $4, $5, now())
                ON CONFLICT (email) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                email,
                name,
                company,
                source,
                LeadStatus.NEW.value,
            )
            if row is not None:
                logger.info(f"New lead: {email} ({company})")
                return _lead(row), True

            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.LEADS} WHERE email = $1", email
            )
        logger.info(f"Existing lead: {email}")
        return _lead(row), False

    async def list_leads(self, include_unsubscribed: bool = True) -> list[Lead]:
        query = f"SELECT {_COLUMNS} FROM {Table.LEADS}"
        if not include_unsubscribed:
            query += f" WHERE status <> '{LeadStatus.UNSUBSCRIBED.value}'"
        query += " ORDER BY captured_at"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [_lead(row) for row in rows]

    async def record_step(self, email: str, step_id: int) -> None:
        """Mark a step as sent. Recording the same step twice is a no-op."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.LEADS}
                SET completed_steps = array_append(completed_steps, $2::int),
                    current_step = $2,
                    last_sent_at = now()
                WHERE email = $1 AND NOT ($2::int = ANY(completed_steps))
                """,
                email,
                step_id,
            )

    async def unsubscribe(self, email: str) -> bool:
        """Stop mails for a lead. False if the e-mail is unknown."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {Table.LEADS}
                SET status = $2, unsubscribed_at = COALESCE(unsubscribed_at, now())
                WHERE email = $1
                """,
                email,
                LeadStatus.UNSUBSCRIBED.value,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.split()[-1] != "0"

    async def record_run(self, sent: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO {Table.DRIP_RUNS} (run_at, sent) VALUES (now(), $1)",
                sent,
            )

    async def last_run_at(self) -> Optional[datetime]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT max(run_at) FROM {Table.DRIP_RUNS}")
