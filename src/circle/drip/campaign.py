"""Drip campaign runner.

Each pass sends at most one step per lead: the first step not yet
completed, provided its day offset has elapsed since capture. A step is
recorded only after a successful send, so failed sends are retried on the
next pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from circle.drip.mailer import Mailer
from circle.drip.store import Lead, LeadStore
from circle.drip.templates import STEPS, DripStep, render

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class DripRunResult:
    processed: int
    sent: int


def next_due_step(
    lead: Lead,
    now: datetime,
    steps: tuple[DripStep, ...] = STEPS,
) -> Optional[DripStep]:
    """First uncompleted step whose delay has elapsed, else None."""
    if lead.unsubscribed or lead.captured_at is None:
        return None
    days_since = (now - lead.captured_at).total_seconds() / SECONDS_PER_DAY
    for step in steps:
        if step.id in lead.completed_steps:
            continue
        if days_since < step.delay_days:
            return None
        return step
    return None


class DripCampaign:
    def __init__(
        self,
        store: LeadStore,
        mailer: Mailer,
        base_url: str,
        steps: tuple[DripStep, ...] = STEPS,
    ):
        self.store = store
        self.mailer = mailer
        self.base_url = base_url.rstrip("/")
        self.steps = steps

    def unsubscribe_url(self, email: str) -> str:
        return f"{self.base_url}/api/unsubscribe?email={quote(email, safe='')}"

    async def process_lead(self, lead: Lead, now: Optional[datetime] = None) -> bool:
        """Send the lead's due step, if any. True when a mail went out."""
        now = now or datetime.now(timezone.utc)
        step = next_due_step(lead, now, self.steps)
        if step is None:
            return False

        html_body, text_body = render(step, lead.name, self.unsubscribe_url(lead.email))
        logger.info(f"[Step {step.id}] {lead.email} - {step.subject!r}")
        sent = await self.mailer.send(lead.email, step.subject, html_body, text_body)
        if sent:
            await self.store.record_step(lead.email, step.id)
            lead.completed_steps.append(step.id)
            lead.current_step = step.id
            lead.last_sent_at = now
        else:
            logger.error(f"Giving up on step {step.id} for {lead.email} until next run")
        return sent

    async def run(self, now: Optional[datetime] = None) -> DripRunResult:
        now = now or datetime.now(timezone.utc)
        leads = await self.store.list_leads(include_unsubscribed=False)
        logger.info(f"Processing {len(leads)} leads")

        sent = 0
        for lead in leads:
            if await self.process_lead(lead, now):
                sent += 1

        await self.store.record_run(sent)
        logger.info(f"Drip run done, sent {sent} emails")
        return DripRunResult(processed=len(leads), sent=sent)

    async def status(self) -> dict:
        leads = await self.store.list_leads()
        last_run = await self.store.last_run_at()
        return {
            "leads": len(leads),
            "lastProcessed": last_run.isoformat() if last_run else None,
            "summary": [
                {
                    "email": lead.email,
                    "step": len(lead.completed_steps),
                    "total": len(self.steps),
                    "status": lead.status,
                }
                for lead in leads
            ],
        }
