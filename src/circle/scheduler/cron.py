"""Cron-compatible entry points for scheduled runs.

Provides callable functions with no arguments for cron integration:
- resync_run()
- drip_run()

Each one POSTs to the running service so work happens in the process that
holds the Discord gateway connection.
"""

import asyncio
import logging

import aiohttp

from circle.config.settings import get_config

logger = logging.getLogger(__name__)

TRIGGER_TIMEOUT_SECONDS = 300


async def trigger(path: str, headers: dict[str, str]) -> dict:
    """POST to the service and return its JSON reply.

    Raises:
        aiohttp.ClientError: On transport errors or a non-2xx status
    """
    config = get_config()
    url = f"{config.service_url.rstrip('/')}{path}"
    timeout = aiohttp.ClientTimeout(total=TRIGGER_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(url, headers=headers) as response:
            response.raise_for_status()
            result = await response.json()
    logger.info(f"Cron trigger {path}: {result}")
    return result


def resync_run() -> None:
    """Entry point for the reconciliation sweep (e.g. hourly).

    Callable with no arguments for cron integration.
    """
    logger.info("Cron: resync_run triggered")
    token = get_config().scheduler_token.get_secret_value()
    asyncio.run(trigger("/admin/resync", {"X-CRON-SECRET": token}))


def drip_run() -> None:
    """Entry point for one drip campaign pass (e.g. daily).

    Callable with no arguments for cron integration.
    """
    logger.info("Cron: drip_run triggered")
    token = get_config().scheduler_token.get_secret_value()
    asyncio.run(trigger("/api/drip/run", {"Authorization": f"Bearer {token}"}))
