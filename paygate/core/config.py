import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None  # unset = in-process snapshot cache

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = False  # trust X-User-Id / X-User-Email (dev + tests only)

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    BILLING_TIMEOUT_SECONDS: float = 10.0
    BILLING_MAX_RETRIES: int = 1

    # Pricing (server-defined, never taken from a request)
    CURRENCY: str = "usd"
    SUBSCRIPTION_PRICE_CENTS: int = 1099  # $10.99 / month
    UNLOCK_PRICE_CENTS: int = 499  # $4.99 one-time
    SUBSCRIPTION_PLAN_TYPE: str = "premium"

    # Access policy
    FREE_TIER_RESULT_CAP: int = 10
    ENTITLEMENT_CACHE_TTL_SECONDS: int = 120
    ENTITLEMENT_STALE_MAX_AGE_SECONDS: int = 900

    # Pending checkout sweep
    PENDING_TRANSACTION_SWEEP_MINUTES: int = 30

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("paygate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.FREE_TIER_RESULT_CAP < 0:
        message = "FREE_TIER_RESULT_CAP must be >= 0"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
