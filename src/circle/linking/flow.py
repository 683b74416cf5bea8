"""OAuth linking flow: checkout session → Discord identity → role.

START mints a signed state that carries the checkout session id. The
callback walks CALLBACK_RECEIVED → TOKEN_EXCHANGED → IDENTITY_RESOLVED →
LINK_PERSISTED → ROLE_SYNCED; any failure stops the flow with a
LinkingError naming the step it happened in.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

import aiohttp
import asyncpg
import discord

from circle.billing.client import BillingClient, BillingQueryError, customer_id_of
from circle.billing.entitlement import EntitlementEvaluator
from circle.discord_bot.roles import RoleAction, RoleSynchronizer
from circle.linking.oauth import DiscordOAuthClient, OAuthError
from circle.linking.state import InvalidStateError, StateSigner
from circle.linking.store import IdentityLinkStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/discord/callback"
START_PATH = "/oauth/discord/start"


class LinkStep(str, Enum):
    START = "start"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    LINK_PERSISTED = "link_persisted"
    ROLE_SYNCED = "role_synced"
    FAILED = "failed"


class LinkingError(RuntimeError):
    """The flow stopped at `step` for `reason`."""

    def __init__(self, step: LinkStep, reason: str):
        super().__init__(f"{step.value}: {reason}")
        self.step = step
        self.reason = reason

    @property
    def is_client_error(self) -> bool:
        """True when the request itself was bad (missing or invalid parameters)."""
        return self.step in (LinkStep.START, LinkStep.CALLBACK_RECEIVED)


class RelinkError(RuntimeError):
    """An e-mail re-link request cannot be served; `status` is the HTTP status."""

    def __init__(self, reason: str, status: int):
        super().__init__(reason)
        self.reason = reason
        self.status = status


@dataclass
class LinkOutcome:
    discord_user_id: str
    customer_id: str
    entitled: bool
    role_action: RoleAction


class LinkingFlow:
    """Runs the linking protocol against injected collaborators."""

    def __init__(
        self,
        oauth: DiscordOAuthClient,
        signer: StateSigner,
        billing: BillingClient,
        store: IdentityLinkStore,
        evaluator: EntitlementEvaluator,
        roles: RoleSynchronizer,
    ):
        self.oauth = oauth
        self.signer = signer
        self.billing = billing
        self.store = store
        self.evaluator = evaluator
        self.roles = roles

    @staticmethod
    def redirect_uri(base_url: str) -> str:
        return f"{base_url.rstrip('/')}{CALLBACK_PATH}"

    def start(self, code: str, base_url: str) -> str:
        """Authorize URL for a checkout session id.

        Raises:
            LinkingError: If code is empty or no state secret is configured
        """
        if not code:
            raise LinkingError(LinkStep.START, "code (CHECKOUT_SESSION_ID) required")
        try:
            state = self.signer.mint(code)
        except (RuntimeError, ValueError) as e:
            raise LinkingError(LinkStep.START, str(e)) from e

        logger.info(f"OAuth start for session {code}")
        return self.oauth.authorize_url(self.redirect_uri(base_url), state)

    async def complete(self, code: str, state: str, base_url: str) -> LinkOutcome:
        """Finish linking from the OAuth callback parameters.

        Raises:
            LinkingError: On failure at any step
        """
        step = LinkStep.CALLBACK_RECEIVED
        if not code or not state:
            raise LinkingError(step, "missing required parameters (code or state)")
        try:
            session_id = self.signer.parse(state).session_ref
        except InvalidStateError as e:
            logger.warning(f"Rejected OAuth state: {e}")
            raise LinkingError(step, "invalid state parameter") from e

        redirect_uri = self.redirect_uri(base_url)
        try:
            step = LinkStep.TOKEN_EXCHANGED
            access_token = await self.oauth.exchange_code(code, redirect_uri)

            step = LinkStep.IDENTITY_RESOLVED
            discord_user_id = await self.oauth.fetch_identity(access_token)

            step = LinkStep.LINK_PERSISTED
            session = await self.billing.retrieve_checkout_session(session_id)
            customer_id = customer_id_of(session)
            if not customer_id:
                raise LinkingError(step, "customer not found for session")
            previous = await self.store.get_link_code(session_id)
            if previous is not None and (previous.used or previous.is_expired()):
                logger.info(
                    f"Re-linking with link code {session_id} "
                    f"(used={previous.used}, expired={previous.is_expired()})",
                    extra={"session_id": session_id, "customer_id": customer_id},
                )
            await self.store.record_link_code(session_id, customer_id)
            await self.store.upsert_link(discord_user_id, customer_id)
            await self.store.mark_link_code_used(session_id)

            step = LinkStep.ROLE_SYNCED
            entitled = await self.evaluator.is_entitled(customer_id)
            action = await self.roles.ensure_role(
                discord_user_id, entitled, f"oauth link entitle={entitled}"
            )
            await self.store.mark_synced(discord_user_id)
        except LinkingError:
            raise
        except (
            OAuthError,
            BillingQueryError,
            asyncpg.PostgresError,
            asyncpg.InterfaceError,
            discord.HTTPException,
            aiohttp.ClientError,
            asyncio.TimeoutError,
            RuntimeError,
        ) as e:
            logger.error(
                f"OAuth linking failed at {step.value}: {e}",
                extra={"link_step": step.value, "session_id": session_id},
            )
            raise LinkingError(step, str(e)) from e

        logger.info(
            f"Linked {discord_user_id} to {customer_id} (entitled={entitled}, role={action.value})",
            extra={
                "discord_user_id": discord_user_id,
                "customer_id": customer_id,
                "link_step": LinkStep.ROLE_SYNCED.value,
            },
        )
        return LinkOutcome(
            discord_user_id=discord_user_id,
            customer_id=customer_id,
            entitled=entitled,
            role_action=action,
        )

    async def relink_by_email(self, email: str, base_url: str) -> str:
        """Start URL for a paying member who never finished linking.

        The member's latest checkout session stands in for the code the
        success page would have passed to START.

        Raises:
            RelinkError: 404 for an unknown customer, 400 without an active
                subscription, 500 when no checkout session exists
            BillingQueryError: On Stripe failures
        """
        email = email.strip()
        customer = await self.billing.find_customer_by_email(email)
        if customer is None:
            raise RelinkError(f"No customer found for {email}", 404)
        customer_id = customer["id"]

        active = await self.billing.list_subscriptions(customer_id, status="active")
        if not active:
            raise RelinkError("No active subscription for this e-mail", 400)

        session = await self.billing.latest_checkout_session(customer_id)
        if session is None:
            logger.error(f"Customer {customer_id} has an active subscription but no checkout session")
            raise RelinkError("Checkout session not found", 500)

        logger.info(f"Re-link requested for {customer_id} via session {session['id']}")
        return f"{base_url.rstrip('/')}{START_PATH}?code={quote(session['id'], safe='')}"
