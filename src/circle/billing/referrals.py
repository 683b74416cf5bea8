"""Member referral codes and their Stripe coupons."""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import asyncpg

from circle.billing.client import BillingClient, BillingQueryError
from circle.db.models import Table

logger = logging.getLogger(__name__)

DEFAULT_CODE_NAME = "CIRCLE"


class ReferralError(LookupError):
    """Referral lookup failed; `reason` is a short machine-readable code."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


@dataclass
class ReferralCode:
    code: str
    referrer_email: str
    referrer_customer_id: str
    coupon_id: Optional[str]
    referrals: int
    created_at: datetime
    last_referral_at: Optional[datetime] = None

    @property
    def referrer_name(self) -> str:
        return self.referrer_email.split("@")[0]


def make_referral_code(customer_name: Optional[str]) -> str:
    """REF-<first four name characters, or CIRCLE>-<6 hex>."""
    label = re.sub(r"\s", "", customer_name or "")[:4].upper() or DEFAULT_CODE_NAME
    return f"REF-{label}-{secrets.token_hex(3).upper()}"


_COLUMNS = (
    "code, referrer_email, referrer_customer_id, coupon_id, referrals, created_at, last_referral_at"
)


class ReferralService:
    """referral_codes table plus the coupons that reward both sides."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        billing: BillingClient,
        reward_amount: int = 1000,
        currency: str = "jpy",
    ):
        self.pool = pool
        self.billing = billing
        self.reward_amount = reward_amount
        self.currency = currency

    def _coupon_params(self, name: str, metadata: dict[str, str]) -> dict[str, Any]:
        return {
            "amount_off": self.reward_amount,
            "currency": self.currency,
            "duration": "once",
            "name": name,
            "metadata": metadata,
        }

    async def _find_by_email(self, email: str) -> Optional[ReferralCode]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.REFERRAL_CODES} WHERE referrer_email = $1",
                email,
            )
        return ReferralCode(**dict(row)) if row else None

    async def generate(self, email: str) -> ReferralCode:
        """Return the member's referral code, creating it on first request.

        Raises:
            ReferralError: If no Stripe customer has this e-mail
            BillingQueryError: If the customer lookup fails
        """
        normalized = email.strip().lower()

        customer = await self.billing.find_customer_by_email(normalized)
        if customer is None:
            raise ReferralError("member_not_found", f"No member with e-mail {normalized}")

        existing = await self._find_by_email(normalized)
        if existing:
            return existing

        code = make_referral_code(customer.get("name"))
        coupon_id = None
        try:
            coupon = await self.billing.create_coupon(
                self._coupon_params(
                    f"Referral reward ({code})",
                    {"referral_code": code, "referrer_email": normalized},
                )
            )
            coupon_id = coupon["id"]
        except BillingQueryError as e:
            logger.warning(f"Referral coupon creation failed for {code}: {e}")

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.REFERRAL_CODES}
                    (code, referrer_email, referrer_customer_id, coupon_id, referrals, created_at)
                VALUES ($1, $2, $3, $4, 0, now())
                ON CONFLICT (referrer_email) DO UPDATE SET
                    referrer_email = EXCLUDED.referrer_email
                RETURNING {_COLUMNS}
                """,
                code,
                normalized,
                customer["id"],
                coupon_id,
            )

        referral = ReferralCode(**dict(row))
        logger.info(f"Generated referral code {referral.code} for {normalized}")
        return referral

    async def verify(self, code: str) -> Optional[ReferralCode]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.REFERRAL_CODES} WHERE code = $1",
                code,
            )
        return ReferralCode(**dict(row)) if row else None

    async def complete(self, code: str, new_member_email: str) -> ReferralCode:
        """Count a referral and reward the referrer.

        The coupon is applied to the referrer's active subscription; coupon
        failures are logged and do not undo the count.

        Raises:
            ReferralError: If the code is unknown
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {Table.REFERRAL_CODES}
                SET referrals = referrals + 1, last_referral_at = now()
                WHERE code = $1
                RETURNING {_COLUMNS}
                """,
                code,
            )
        if row is None:
            raise ReferralError("invalid_code", f"Unknown referral code {code}")

        referral = ReferralCode(**dict(row))
        if referral.coupon_id and referral.referrer_customer_id:
            await self._reward_referrer(referral)

        logger.info(f"Referral completed: {code} -> {new_member_email}")
        return referral

    async def _reward_referrer(self, referral: ReferralCode) -> None:
        try:
            subs = await self.billing.list_subscriptions(
                referral.referrer_customer_id, status="active"
            )
            if not subs:
                logger.info(f"Referrer {referral.referrer_email} has no active subscription")
                return
            await self.billing.apply_subscription_coupon(subs[0]["id"], referral.coupon_id)
            logger.info(f"Applied referral reward to {referral.referrer_email}")
        except BillingQueryError as e:
            logger.warning(f"Referral coupon apply failed for {referral.code}: {e}")

    async def new_member_coupon(self, code: str) -> Optional[str]:
        """One-off coupon for a new member checking out with a valid code.

        Returns None when the code is unknown.

        Raises:
            BillingQueryError: If coupon creation fails
        """
        referral = await self.verify(code)
        if referral is None:
            return None
        coupon = await self.billing.create_coupon(
            self._coupon_params(
                f"Referral discount ({code})",
                {"referral_code": code, "type": "new_member"},
            )
        )
        logger.info(f"Created new-member coupon for referral code {code}")
        return coupon["id"]
