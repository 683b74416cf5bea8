"""Forward-only migration runner and schema version helper."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import asyncpg

from circle.db.models import Table
from circle.db.pool import close_pool, get_pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# pg_advisory_lock key reserved for the migration runner
MIGRATION_LOCK_ID = 734_201


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL DEFAULT '',
            applied_at TIMESTAMPTZ DEFAULT now()
        )
    """)


def pending_migrations(migrations_dir: Path, applied: set[int]) -> list[tuple[int, Path]]:
    """
    Return (version, path) pairs not yet applied, ordered by version.

    Files are named NNN_description.sql; anything else is ignored.
    """
    pending = []
    for sql_file in migrations_dir.glob("*.sql"):
        prefix = sql_file.stem.split("_", 1)[0]
        if not prefix.isdigit():
            continue
        version = int(prefix)
        if version not in applied:
            pending.append((version, sql_file))
    return sorted(pending)


async def migrate(pool: Optional[asyncpg.Pool] = None) -> int:
    """
    Apply all pending migrations in order.

    Each file runs in its own transaction. asyncpg's simple-query path
    accepts a multi-statement script when no arguments are bound, so files
    are executed whole. An advisory lock keeps concurrent runners out.

    Returns:
        Number of migrations applied in this run

    Raises:
        FileNotFoundError: If the migrations directory is missing
        RuntimeError: If another runner holds the lock
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    pool = pool or await get_pool()
    applied_count = 0

    async with pool.acquire() as conn:
        if not await conn.fetchval("SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_ID):
            raise RuntimeError("Another migration is currently running")

        try:
            await _ensure_migrations_table(conn)
            rows = await conn.fetch(f"SELECT version FROM {Table.SCHEMA_MIGRATIONS}")
            applied = {row["version"] for row in rows}

            for version, sql_path in pending_migrations(MIGRATIONS_DIR, applied):
                async with conn.transaction():
                    await conn.execute(sql_path.read_text(encoding="utf-8"))
                    await conn.execute(
                        f"INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename) VALUES ($1, $2)",
                        version,
                        sql_path.name,
                    )
                applied_count += 1
                logger.info(f"Applied migration {version:03d}: {sql_path.name}")
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    return applied_count


async def schema_version(pool: Optional[asyncpg.Pool] = None) -> Optional[int]:
    """Highest applied migration version, or None on an empty database."""
    pool = pool or await get_pool()
    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point for running migrations."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    async def _run():
        try:
            applied = await migrate()
            version = await schema_version()
        finally:
            await close_pool()
        print(f"Applied {applied} migration(s). Current schema version: {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
