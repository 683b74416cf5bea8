"""Application entry point."""

import asyncio
import logging
import signal
import sys

import asyncpg
from pydantic import ValidationError

from circle.billing.checkout import CheckoutService
from circle.billing.client import BillingClient
from circle.billing.entitlement import EntitlementEvaluator
from circle.billing.ledger import EventLedger
from circle.billing.referrals import ReferralService
from circle.billing.reports import BillingReports
from circle.billing.snapshots import CustomerSnapshotStore
from circle.billing.webhooks import WebhookIngress
from circle.config import AppConfig, RuntimeSettings, get_config, missing_settings, resolve_settings
from circle.db import close_pool, get_pool
from circle.db.schema.migrate import migrate
from circle.discord_bot.bot import CircleBot
from circle.discord_bot.roles import RoleSynchronizer
from circle.drip.campaign import DripCampaign
from circle.drip.mailer import create_mailer
from circle.drip.store import LeadStore
from circle.linking.flow import LinkingFlow
from circle.linking.oauth import DiscordOAuthClient
from circle.linking.state import StateSigner
from circle.linking.store import IdentityLinkStore
from circle.scheduler.reconcile import Reconciler
from circle.web.app import Services, run_server

logger = logging.getLogger(__name__)


def build_services(
    config: AppConfig,
    settings: RuntimeSettings,
    pool: asyncpg.Pool,
    bot: CircleBot,
) -> Services:
    """Wire every component with its collaborators."""
    billing = BillingClient(settings.stripe_secret_key)
    links = IdentityLinkStore(pool, link_code_ttl_days=settings.link_code_ttl_days)
    evaluator = EntitlementEvaluator(billing, settings.entitled_price_ids)
    roles = RoleSynchronizer(bot, settings.discord_pro_role_id, settings.discord_ready_delay_seconds)
    referrals = ReferralService(
        pool,
        billing,
        reward_amount=settings.referral_reward_amount,
        currency=settings.referral_currency,
    )
    leads = LeadStore(pool)

    webhooks = WebhookIngress(
        billing=billing,
        webhook_secret=settings.stripe_webhook_secret,
        ledger=EventLedger(pool),
        links=links,
        evaluator=evaluator,
        roles=roles,
        snapshots=CustomerSnapshotStore(pool, billing),
        referrals=referrals,
    )
    linking = LinkingFlow(
        oauth=DiscordOAuthClient(settings.discord_client_id, settings.discord_client_secret),
        signer=StateSigner(settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
        billing=billing,
        store=links,
        evaluator=evaluator,
        roles=roles,
    )

    return Services(
        settings=settings,
        bot=bot,
        webhooks=webhooks,
        linking=linking,
        reconciler=Reconciler(links, evaluator, roles),
        checkout=CheckoutService(
            billing, settings.prices, settings.student_email_domains, referrals
        ),
        referrals=referrals,
        reports=BillingReports(
            billing, links, settings.entitled_price_ids, settings.unlinked_grace_hours
        ),
        leads=leads,
        drip=DripCampaign(
            leads,
            create_mailer(config),
            base_url=settings.public_base_url or config.service_url,
        ),
    )


async def boot() -> None:
    """
    Boot sequence: config → settings check → pool → migrations → bot →
    HTTP server until SIGTERM/SIGINT → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        config = get_config()
        settings = resolve_settings(config)
        logger.info(f"Configuration loaded: env={config.env}, stripe_mode={settings.mode}")

        for name in missing_settings(settings):
            logger.warning(f"Missing setting: {name}")

        pool = await get_pool()
        applied = await migrate(pool)
        logger.info(f"Database ready ({applied} migration(s) applied)")
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    bot = CircleBot(settings.discord_bot_token, settings.discord_guild_id)
    bot.init()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        services = build_services(config, settings, pool, bot)
        await run_server(
            services,
            port=config.port,
            cors_allowed_origins=config.cors_allowed_origins,
            shutdown_event=shutdown_event,
        )
    finally:
        await bot.shutdown()
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        config = get_config()
    except ValidationError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)
    logging.getLogger().setLevel(config.log_level.upper())

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
