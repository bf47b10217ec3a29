"""Process-wide configuration gathered into a single explicit object.

Services receive a ``Settings`` instance at construction instead of reading
the environment themselves, so tests can inject secrets and clocks.
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "bizlytics-dev-secret-change-me"


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Application settings.

    Attributes:
        environment: Deployment name ("development", "test", "production").
        jwt_secret: HMAC key used to sign session tokens.
        jwt_algorithm: JWT signing algorithm.
        session_ttl: Lifetime of a session from login or registration.
        bcrypt_rounds: Work factor for password hashes.
        stripe_secret_key: Stripe API key; None disables billing API calls.
        stripe_webhook_secret: Webhook signing secret; None means development
            mode where signatures are not verified.
        webhook_tolerance_seconds: Maximum age of a signed webhook timestamp.
        premium_integration_types: Integrations switched off when a
            subscription is deleted.
        session_sweep_interval_seconds: Period of the background expired
            session sweep (0 disables it).
        trial_period_days: Trial length for new subscriptions.
    """
    environment: str = "development"
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    session_ttl: timedelta = timedelta(days=30)
    bcrypt_rounds: int = 12
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    webhook_tolerance_seconds: int = 300
    premium_integration_types: tuple[str, ...] = field(
        default_factory=lambda: ("google_analytics", "gmail")
    )
    session_sweep_interval_seconds: int = 3600
    trial_period_days: int = 14

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def webhook_verification_enabled(self) -> bool:
        return bool(self.stripe_webhook_secret)

    @property
    def billing_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment (and a local .env file)."""
        load_dotenv()
        environment = os.environ.get("APP_ENV", "development")

        jwt_secret = os.environ.get("JWT_SECRET")
        if not jwt_secret:
            if environment != "development":
                logger.warning(
                    "JWT_SECRET is not set in %s; falling back to the development key",
                    environment,
                )
            jwt_secret = DEV_JWT_SECRET

        return cls(
            environment=environment,
            jwt_secret=jwt_secret,
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
            session_ttl=timedelta(days=int(os.environ.get("SESSION_TTL_DAYS", "30"))),
            bcrypt_rounds=int(os.environ.get("BCRYPT_ROUNDS", "12")),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET") or None,
            webhook_tolerance_seconds=int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", "300")),
            premium_integration_types=_split_csv(
                os.environ.get("PREMIUM_INTEGRATION_TYPES", "google_analytics,gmail")
            ),
            session_sweep_interval_seconds=int(
                os.environ.get("SESSION_SWEEP_INTERVAL_SECONDS", "3600")
            ),
            trial_period_days=int(os.environ.get("TRIAL_PERIOD_DAYS", "14")),
        )


@lru_cache
def get_settings() -> Settings:
    """FastAPI dependency returning the process settings."""
    return Settings.from_env()
