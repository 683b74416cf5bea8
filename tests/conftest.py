"""Shared fixtures: database pools (mock and real), Discord fakes and resolved settings."""

import os
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
import pytest_asyncio

from circle.billing.client import BillingClient
from circle.config.settings import PriceCatalog, RuntimeSettings
from circle.db.models import Table
from circle.db.pool import close_pool, get_pool
from circle.db.schema.migrate import migrate
from circle.discord_bot.bot import GatewayState

DATA_TABLES = (
    Table.IDENTITY_LINKS,
    Table.LINK_CODES,
    Table.CUSTOMER_SNAPSHOTS,
    Table.REFERRAL_CODES,
    Table.PROCESSED_EVENTS,
    Table.LEADS,
    Table.DRIP_RUNS,
)


@pytest_asyncio.fixture
async def pool():
    """
    Real database pool with migrations applied and every data table empty.

    Skipped unless DB_DSN points at a disposable Postgres database.
    """
    if not os.environ.get("DB_DSN"):
        pytest.skip("DB_DSN not set")

    pool = await get_pool()
    await migrate(pool)
    async with pool.acquire() as conn:
        await conn.execute(f"TRUNCATE {', '.join(DATA_TABLES)}")

    yield pool

    await close_pool()


def make_pool(conn: Optional[AsyncMock] = None):
    """Mock pool whose acquire() context yields conn."""
    conn = conn or AsyncMock()
    acquire = AsyncMock()
    acquire.__aenter__.return_value = conn
    acquire.__aexit__.return_value = None
    pool = MagicMock()
    pool.acquire.return_value = acquire
    return pool, conn


def not_found(message: str = "Unknown Member") -> discord.NotFound:
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), message)


def subscription(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price_ids: tuple[str, ...] = ("price_pro",),
    cancel_at_period_end: bool = False,
    **extra,
) -> dict:
    """Stripe-shaped subscription dict."""
    return {
        "id": sub_id,
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"price": {"id": pid}} for pid in price_ids]},
        **extra,
    }


class FakeMember:
    """Server-side member record. Role edits land here, like Discord's API."""

    def __init__(self, member_id: int, role_ids: Optional[set[int]] = None):
        self.id = member_id
        self.role_ids = set(role_ids or ())
        self.add_calls = 0
        self.remove_calls = 0
        self.reasons: list[str] = []

    async def add_roles(self, *roles, reason=None):
        self.add_calls += 1
        self.reasons.append(reason)
        self.role_ids.update(r.id for r in roles)

    async def remove_roles(self, *roles, reason=None):
        self.remove_calls += 1
        self.reasons.append(reason)
        self.role_ids.difference_update(r.id for r in roles)

    def snapshot(self) -> "MemberView":
        return MemberView(self)


class MemberView:
    """Client-side copy of a member, frozen when it was read.

    Editing roles goes to the record but never updates the view, the same
    way a discord.py Member only changes on a later gateway event.
    """

    def __init__(self, record: FakeMember):
        self.id = record.id
        self._record = record
        self._role_ids = frozenset(record.role_ids)

    def get_role(self, role_id: int):
        return discord.Object(id=role_id) if role_id in self._role_ids else None

    async def add_roles(self, *roles, reason=None):
        await self._record.add_roles(*roles, reason=reason)

    async def remove_roles(self, *roles, reason=None):
        await self._record.remove_roles(*roles, reason=reason)


class FakeGuild:
    """fetch_member reads the records; get_member serves views cached at setup."""

    def __init__(self, members: Optional[list[FakeMember]] = None, cached: bool = False):
        self.members = {m.id: m for m in members or []}
        self.cache = {m.id: m.snapshot() for m in members or []} if cached else {}
        self.fetch_calls = 0

    def get_member(self, member_id: int):
        return self.cache.get(member_id)

    async def fetch_member(self, member_id: int):
        self.fetch_calls += 1
        if member_id not in self.members:
            raise not_found()
        return self.members[member_id].snapshot()


class FakeBot:
    def __init__(self, guild: FakeGuild, state: GatewayState = GatewayState.READY):
        self.guild = guild
        self.gateway_state = state

    @property
    def is_gateway_ready(self) -> bool:
        return self.gateway_state is GatewayState.READY

    async def resolve_guild(self):
        return self.guild


@pytest.fixture
def billing():
    return MagicMock(spec=BillingClient)


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        mode="test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        prices=PriceCatalog(
            monthly="price_pro",
            yearly="price_year",
            student="price_student",
            extra=("price_legacy",),
        ),
        discord_client_id="client-1",
        discord_client_secret="client-secret",
        discord_bot_token="bot-token",
        discord_guild_id=1000,
        discord_pro_role_id=555,
        discord_guild_invite_url="https://discord.gg/example",
        discord_ready_delay_seconds=0.0,
        oauth_state_secret="state-secret",
        oauth_state_ttl_seconds=600,
        scheduler_token="cron-secret",
        link_code_ttl_days=14,
        unlinked_grace_hours=24,
        public_base_url="https://members.example.com",
        student_email_domains=(".ac.jp", ".edu", ".ed.jp"),
        referral_reward_amount=1000,
        referral_currency="jpy",
    )
