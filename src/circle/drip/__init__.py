"""E-mail drip campaign for captured leads."""

from circle.drip.campaign import DripCampaign, DripRunResult, next_due_step
from circle.drip.mailer import Mailer, create_mailer
from circle.drip.store import Lead, LeadStore

__all__ = [
    "DripCampaign",
    "DripRunResult",
    "Lead",
    "LeadStore",
    "Mailer",
    "create_mailer",
    "next_due_step",
]
