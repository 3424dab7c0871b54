"""Settings loaded from the environment and .env via pydantic-settings."""
import logging
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Payment processor (Stripe)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    PAYMENT_CURRENCY: str = "usd"
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Sessions are issued by the auth system; we only verify them
    AUTH_JWT_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    ACTIVATION_MAX_ATTEMPTS: int = 3
    SEED_DEFAULT_PLANS: bool = False

    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 3600
    EXPIRY_LOOKAHEAD_DAYS: int = 3

    CORS_ORIGINS: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()

# Needed for billing to work at all
REQUIRED_KEYS = ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
# Without these, production would fall back to header auth or lock out admins
PRODUCTION_KEYS = ("AUTH_JWT_SECRET", "ADMIN_KEY")


def validate_config(
    strict: Optional[bool] = None,
    settings_obj: Optional[Settings] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Report missing configuration by key name, never by value.

    Raises RuntimeError in strict mode (explicit flag, else CONFIG_STRICT);
    otherwise logs a warning and lets the process start.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("marketbill")
    if strict is None:
        strict = bool(getattr(cfg, "CONFIG_STRICT", False))

    keys = list(REQUIRED_KEYS)
    if getattr(cfg, "ENV", "development") == "production":
        keys.extend(PRODUCTION_KEYS)

    missing = [key for key in keys if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict:
        raise RuntimeError(message)
    log.warning(message)
    return True
