"""
meterbill Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the billing engine.
    All settings can be overridden via environment variables (METERBILL_ prefix).

    The Settings object is resolved once at process start (module-level
    ``settings``) and handed to components through ``build_services()``.
    Services never read environment variables themselves.
"""

import logging
from typing import Literal, Optional

from pydantic_settings import BaseSettings

from meterbill.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_DEFAULT_STRIPE_API_BASE = "https://api.stripe.com/v1"


class Settings(BaseSettings):
    """Billing engine settings."""

    app_name: str = "meterbill"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "production"

    # Persistence
    database_url: str = "sqlite:///data/meterbill.db"

    # Payment processor (Stripe-compatible REST API)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_base: str = _DEFAULT_STRIPE_API_BASE
    currency: str = "usd"
    processor_timeout_s: float = 10.0
    processor_connect_timeout_s: float = 5.0
    # Attempts for requests that never reached the processor (connect errors)
    processor_max_attempts: int = 3

    # Wallet ledger: compare-and-swap retries on ConcurrentModification
    ledger_max_attempts: int = 3

    # Wallet credit applied to the first invoice of a new subscription
    subscription_wallet_cap_minor: int = 50000

    # Dunning
    grace_period_days: int = 7
    past_due_suspension_days: int = 10

    # Batch runs
    test_mode_sample_size: int = 5
    batch_inter_account_delay_s: float = 0.5  # Respect processor rate limits
    batch_max_concurrency: int = 1

    # Webhooks: max age of a signed timestamp (0 disables the check)
    webhook_tolerance_s: int = 300

    # Service-to-service auth for the job trigger endpoints
    internal_api_key: Optional[str] = None

    # Logging
    log_dir: str = "logs"
    log_file: str = "meterbill.jsonl"

    class Config:
        env_file = ".env"
        env_prefix = "METERBILL_"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    def require_stripe_secret(self) -> str:
        """Return the processor secret key or raise ConfigurationError."""
        if not self.stripe_secret_key:
            raise ConfigurationError(
                detail="METERBILL_STRIPE_SECRET_KEY is not configured; cannot create invoices",
                context={"setting": "stripe_secret_key"},
            )
        return self.stripe_secret_key

    def require_webhook_secret(self) -> str:
        """Return the webhook signing secret or raise ConfigurationError."""
        if not self.stripe_webhook_secret:
            raise ConfigurationError(
                detail="METERBILL_STRIPE_WEBHOOK_SECRET is not configured",
                context={"setting": "stripe_webhook_secret"},
            )
        return self.stripe_webhook_secret


settings = Settings()

logger.info(
    "meterbill configured: environment=%s stripe=%s",
    settings.environment,
    "configured" if settings.stripe_configured else "missing",
)
