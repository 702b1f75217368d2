"""Application configuration"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Partner Access Core"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./partner_access.db"

    # URLs
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    # WHY: Only webhook signature verification talks to the SDK; the secret key
    # is optional so the core can run without billing configured.
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Plan catalog
    PLAN_CATALOG_CACHE_TTL_SECONDS: int = 300

    # Billing reconciliation
    RECONCILER_MAX_CONFLICT_RETRIES: int = 3
    BILLING_NOT_FOUND_ESCALATION_THRESHOLD: int = 3

    # Notifications
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_ENABLED: bool = False
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    @property
    def notification_webhook_configured(self) -> bool:
        """Webhook channel needs both the flag and a target URL."""
        return bool(self.NOTIFICATION_WEBHOOK_ENABLED and self.NOTIFICATION_WEBHOOK_URL)


settings = Settings()
