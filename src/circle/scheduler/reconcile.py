"""Reconciliation sweep: re-derive every link's role from Stripe."""

import logging
from dataclasses import dataclass

from circle.billing.entitlement import EntitlementEvaluator
from circle.discord_bot.roles import RoleSynchronizer
from circle.linking.store import IdentityLinkStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    ok: int = 0
    ng: int = 0

    @property
    def total(self) -> int:
        return self.ok + self.ng

    def to_dict(self) -> dict:
        return {"ok": self.ok, "ng": self.ng, "total": self.total}


class Reconciler:
    """Walks all identity links sequentially and corrects role drift."""

    def __init__(
        self,
        links: IdentityLinkStore,
        evaluator: EntitlementEvaluator,
        roles: RoleSynchronizer,
    ):
        self.links = links
        self.evaluator = evaluator
        self.roles = roles

    async def resync(self) -> SweepResult:
        """One full pass. A failing record is counted in ng and skipped.

        Raises:
            asyncpg.PostgresError: If the links cannot be listed
        """
        result = SweepResult()
        links = await self.links.list_links()
        logger.info(f"Resync started for {len(links)} links")

        for link in links:
            if not link.customer_id:
                result.ng += 1
                continue
            try:
                entitled = await self.evaluator.is_entitled(link.customer_id)
                await self.roles.ensure_role(
                    link.discord_user_id, entitled, f"scheduled resync entitle={entitled}"
                )
                await self.links.mark_synced(link.discord_user_id)
                result.ok += 1
            except Exception as e:
                logger.error(f"Resync failed for {link.discord_user_id}: {e}")
                result.ng += 1

        logger.info(f"Resync finished: ok={result.ok} ng={result.ng} total={result.total}")
        return result
