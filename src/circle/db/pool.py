"""Database connection pool factory and health check."""

import asyncio
import logging
from typing import Optional

import asyncpg

from circle.config import get_config

logger = logging.getLogger(__name__)


_pool: Optional[asyncpg.Pool] = None

CONNECT_TIMEOUT_SECONDS = 5.0


async def get_pool() -> asyncpg.Pool:
    """
    Get or create the shared connection pool.

    The first call creates the pool and runs `SELECT 1` against it; later
    calls return the same pool. Stores receive the pool through their
    constructor, so this is only called while wiring the application.

    Raises:
        asyncio.TimeoutError: If Postgres does not answer within 5 seconds
        RuntimeError: If the health check fails
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Database connection timed out after {CONNECT_TIMEOUT_SECONDS:.0f} seconds"
        )

    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            if result != 1:
                raise RuntimeError(f"Health check failed: expected 1, got {result}")
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    _pool = pool
    logger.info(
        f"Database pool ready: min={config.db_pool_min}, max={config.db_pool_max}"
    )
    return _pool


async def close_pool() -> None:
    """
    Close the shared pool if it exists.

    A close that hangs for more than 5 seconds (leaked connection) is
    turned into terminate().
    """
    global _pool
    if _pool is None:
        return

    try:
        await asyncio.wait_for(_pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Pool close timed out, terminating connections")
        _pool.terminate()
    finally:
        _pool = None
