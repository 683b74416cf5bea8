"""Tests for the migration runner and the initial schema."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from circle.db.models import Table
from circle.db.schema.migrate import MIGRATIONS_DIR, migrate, pending_migrations

from conftest import make_pool


def migration_conn(applied_versions=()) -> AsyncMock:
    conn = AsyncMock()
    conn.fetchval.return_value = True
    conn.fetch.return_value = [{"version": v} for v in applied_versions]
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


class TestPendingMigrations:
    def test_ordered_and_filtered(self, tmp_path: Path):
        for name in ("002_second.sql", "001_first.sql", "notes.sql", "010_tenth.sql"):
            (tmp_path / name).write_text("SELECT 1;")

        pending = pending_migrations(tmp_path, applied={2})

        assert [version for version, _ in pending] == [1, 10]

    def test_shipped_migrations_exist(self):
        versions = [v for v, _ in pending_migrations(MIGRATIONS_DIR, applied=set())]
        assert versions[0] == 1


class TestMigrate:
    @pytest.mark.asyncio
    async def test_fresh_database_applies_everything(self):
        pool, conn = make_pool(migration_conn())

        applied = await migrate(pool)

        assert applied == len(pending_migrations(MIGRATIONS_DIR, set()))
        assert conn.execute.await_args_list[-1].args == ("SELECT pg_advisory_unlock($1)", 734_201)

    @pytest.mark.asyncio
    async def test_rerun_applies_nothing(self):
        versions = [v for v, _ in pending_migrations(MIGRATIONS_DIR, set())]
        pool, conn = make_pool(migration_conn(versions))

        assert await migrate(pool) == 0
        conn.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self):
        conn = migration_conn()
        conn.fetchval.return_value = False
        pool, _ = make_pool(conn)

        with pytest.raises(RuntimeError, match="Another migration"):
            await migrate(pool)


class TestInitialSchema:
    def test_every_table_created(self):
        sql = (MIGRATIONS_DIR / "001_initial.sql").read_text(encoding="utf-8")

        for table in (
            Table.IDENTITY_LINKS,
            Table.LINK_CODES,
            Table.CUSTOMER_SNAPSHOTS,
            Table.REFERRAL_CODES,
            Table.PROCESSED_EVENTS,
            Table.LEADS,
            Table.DRIP_RUNS,
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table} (" in sql
