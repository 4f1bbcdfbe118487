"""Application settings and configuration."""

import sys
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "premium-ledger"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    public_base_url: str = "http://localhost:3000"

    # Database
    database_url: str = "sqlite:///./premium_ledger.db"

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    gateway_max_retries: int = 3

    # Stripe price ids - subscriptions
    stripe_price_monthly_sub: str | None = None
    stripe_price_half_year_sub: str | None = None
    stripe_price_yearly_sub: str | None = None

    # Stripe price ids - one-time packages
    stripe_price_basic_coins: str | None = None
    stripe_price_popular_coins: str | None = None
    stripe_price_premium_coins: str | None = None
    stripe_price_mega_coins: str | None = None
    stripe_price_ultimate_coins: str | None = None
    stripe_price_letter_credits: str | None = None
    stripe_price_letter_credits_discount: str | None = None

    # Pricing
    letter_credit_discount_price: Decimal = Decimal("1.99")

    # Periodic jobs
    reconciliation_interval_minutes: int = 60
    monthly_coin_check_hours: int = 24
    monthly_premium_coins: int = 1000
    processed_event_retention_days: int = 30


# Global settings instance
settings = Settings()

# ── Security validation ──────────────────────────────────────────────
if settings.env == "production" and not settings.stripe_webhook_secret:
    print(
        "\n❌  FATAL: STRIPE_WEBHOOK_SECRET is not set.\n"
        "   Webhook payloads cannot be verified without it.\n",
        file=sys.stderr,
    )
    sys.exit(1)
