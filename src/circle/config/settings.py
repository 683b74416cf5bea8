"""Application configuration schema, validation and mode resolution."""

from dataclasses import dataclass
from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=1,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=5,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="HTTP listen port",
    )
    public_base_url: str = Field(
        default="",
        description="Externally visible base URL; derived from request headers when empty",
    )
    service_url: str = Field(
        default="http://localhost:8080",
        description="URL cron entry points use to reach the running service",
    )

    # Stripe, one credential set per mode
    stripe_mode: Literal["test", "live"] = Field(
        default="test",
        description="Which Stripe credential set is active",
    )
    stripe_secret_key_test: SecretStr = Field(default=SecretStr(""))
    stripe_secret_key_live: SecretStr = Field(default=SecretStr(""))
    stripe_webhook_secret_test: SecretStr = Field(default=SecretStr(""))
    stripe_webhook_secret_live: SecretStr = Field(default=SecretStr(""))
    stripe_price_id_monthly_test: str = Field(default="")
    stripe_price_id_monthly_live: str = Field(default="")
    stripe_price_id_yearly_test: str = Field(default="")
    stripe_price_id_yearly_live: str = Field(default="")
    stripe_price_id_student_test: str = Field(default="")
    stripe_price_id_student_live: str = Field(default="")
    stripe_additional_price_ids_test: str = Field(
        default="",
        description="Comma-separated extra entitled price IDs (test mode)",
    )
    stripe_additional_price_ids_live: str = Field(
        default="",
        description="Comma-separated extra entitled price IDs (live mode)",
    )

    # Discord
    discord_client_id: str = Field(default="", description="OAuth2 application ID")
    discord_client_secret: SecretStr = Field(default=SecretStr(""))
    discord_bot_token: SecretStr = Field(default=SecretStr(""))
    discord_guild_id: str = Field(default="", description="Community guild ID")
    discord_pro_role_id: str = Field(default="", description="Role granted to entitled members")
    discord_guild_invite_url: str = Field(
        default="https://discord.gg/22Ah4EypVK",
        description="Invite link shown after checkout",
    )
    discord_ready_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=30.0,
        description="One-off wait before role sync when the gateway is not ready",
    )

    # Linking / admin
    oauth_state_secret: SecretStr = Field(default=SecretStr(""))
    oauth_state_ttl_seconds: int = Field(
        default=600,
        ge=60,
        le=86400,
        description="Lifetime of a signed OAuth state token",
    )
    scheduler_token: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret for cron and admin endpoints",
    )
    link_code_ttl_days: int = Field(default=14, ge=1, le=90)
    unlinked_grace_hours: int = Field(default=24, ge=0, le=720)

    # Checkout / referrals
    student_email_domains: list[str] = Field(
        default=[".ac.jp", ".edu", ".ed.jp"],
        description="E-mail suffixes that select the student price",
    )
    referral_reward_amount: int = Field(
        default=1000,
        ge=0,
        description="Amount off (minor units) for referral coupons",
    )
    referral_currency: str = Field(default="jpy")
    cors_allowed_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Origins allowed to call the JSON API",
    )

    # E-mail
    email_provider: Literal["dev", "smtp", "sendgrid"] = Field(default="dev")
    from_email: str = Field(default="noreply@example.com")
    sendgrid_api_key: SecretStr = Field(default=SecretStr(""))
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: SecretStr = Field(default=SecretStr(""))

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v


def parse_price_list(value: str) -> list[str]:
    """Split a comma-separated price list, dropping blanks."""
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass(frozen=True)
class PriceCatalog:
    """Mode-selected price identifiers."""

    monthly: str
    yearly: str
    student: str
    extra: tuple[str, ...] = ()

    @property
    def entitled(self) -> frozenset[str]:
        return frozenset(
            p for p in (self.monthly, self.yearly, self.student, *self.extra) if p
        )


@dataclass(frozen=True)
class RuntimeSettings:
    """Immutable snapshot of the active credential set.

    Built once at startup by resolve_settings(); call sites never look at
    stripe_mode again.
    """

    mode: str
    stripe_secret_key: str
    stripe_webhook_secret: str
    prices: PriceCatalog
    discord_client_id: str
    discord_client_secret: str
    discord_bot_token: str
    discord_guild_id: int | None
    discord_pro_role_id: int | None
    discord_guild_invite_url: str
    discord_ready_delay_seconds: float
    oauth_state_secret: str
    oauth_state_ttl_seconds: int
    scheduler_token: str
    link_code_ttl_days: int
    unlinked_grace_hours: int
    public_base_url: str
    student_email_domains: tuple[str, ...]
    referral_reward_amount: int
    referral_currency: str

    @property
    def entitled_price_ids(self) -> frozenset[str]:
        return self.prices.entitled


def _snowflake(value: str) -> int | None:
    value = value.strip()
    return int(value) if value.isdigit() else None


def resolve_settings(config: AppConfig) -> RuntimeSettings:
    """Resolve the mode-scoped credentials into one immutable snapshot."""
    live = config.stripe_mode == "live"

    def pick(test_value, live_value):
        return live_value if live else test_value

    prices = PriceCatalog(
        monthly=pick(config.stripe_price_id_monthly_test, config.stripe_price_id_monthly_live),
        yearly=pick(config.stripe_price_id_yearly_test, config.stripe_price_id_yearly_live),
        student=pick(config.stripe_price_id_student_test, config.stripe_price_id_student_live),
        extra=tuple(
            parse_price_list(
                pick(
                    config.stripe_additional_price_ids_test,
                    config.stripe_additional_price_ids_live,
                )
            )
        ),
    )

    return RuntimeSettings(
        mode=config.stripe_mode,
        stripe_secret_key=pick(
            config.stripe_secret_key_test, config.stripe_secret_key_live
        ).get_secret_value(),
        stripe_webhook_secret=pick(
            config.stripe_webhook_secret_test, config.stripe_webhook_secret_live
        ).get_secret_value(),
        prices=prices,
        discord_client_id=config.discord_client_id,
        discord_client_secret=config.discord_client_secret.get_secret_value(),
        discord_bot_token=config.discord_bot_token.get_secret_value(),
        discord_guild_id=_snowflake(config.discord_guild_id),
        discord_pro_role_id=_snowflake(config.discord_pro_role_id),
        discord_guild_invite_url=config.discord_guild_invite_url,
        discord_ready_delay_seconds=config.discord_ready_delay_seconds,
        oauth_state_secret=config.oauth_state_secret.get_secret_value(),
        oauth_state_ttl_seconds=config.oauth_state_ttl_seconds,
        scheduler_token=config.scheduler_token.get_secret_value(),
        link_code_ttl_days=config.link_code_ttl_days,
        unlinked_grace_hours=config.unlinked_grace_hours,
        public_base_url=config.public_base_url.rstrip("/"),
        student_email_domains=tuple(d.lower() for d in config.student_email_domains),
        referral_reward_amount=config.referral_reward_amount,
        referral_currency=config.referral_currency,
    )


def missing_settings(settings: RuntimeSettings) -> list[str]:
    """List required credentials that are not configured.

    Missing values are reported, not enforced: the service starts in a
    degraded mode and the caller logs each entry as a warning.
    """
    suffix = settings.mode.upper()
    checks = {
        f"STRIPE_SECRET_KEY_{suffix}": settings.stripe_secret_key,
        f"STRIPE_WEBHOOK_SECRET_{suffix}": settings.stripe_webhook_secret,
        "DISCORD_CLIENT_ID": settings.discord_client_id,
        "DISCORD_CLIENT_SECRET": settings.discord_client_secret,
        "DISCORD_BOT_TOKEN": settings.discord_bot_token,
        "DISCORD_GUILD_ID": settings.discord_guild_id,
        "DISCORD_PRO_ROLE_ID": settings.discord_pro_role_id,
        "OAUTH_STATE_SECRET": settings.oauth_state_secret,
        "SCHEDULER_TOKEN": settings.scheduler_token,
    }
    missing = [name for name, value in checks.items() if not value]
    if not settings.entitled_price_ids:
        missing.append(f"STRIPE_PRICE_ID_*_{suffix}")
    return missing


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
