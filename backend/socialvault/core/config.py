"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Settings are validated using Pydantic and cached for performance.
    See .env.example for all available configuration options.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    APP_NAME: str = "SocialVault"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    # Public base URL used in notification links.
    APP_BASE_URL: str = "http://localhost:3000"

    # Signs local object-store URLs.
    SECRET_KEY: str | None = None

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "socialvault"
    POSTGRES_PASSWORD: str = "socialvault_dev_password"
    POSTGRES_DB: str = "socialvault"

    # Optional full DSN override (used by some deployments and tooling)
    POSTGRES_URL: Optional[str] = None

    # Test-only DB override (used by pytest fixtures)
    TEST_DATABASE_URL: Optional[str] = None

    @property
    def DATABASE_URL(self) -> str:
        """Build the async database URL."""
        if self.APP_ENV == "test" and self.TEST_DATABASE_URL:
            return self.TEST_DATABASE_URL
        if self.POSTGRES_URL:
            return self.POSTGRES_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    CELERY_BROKER_URL: str | None = None
    CELERY_RESULT_BACKEND: str | None = None

    # -------------------------------------------------------------------------
    # Object storage
    # -------------------------------------------------------------------------
    # "local" (directory on disk) | "s3" (any S3-compatible endpoint)
    OBJECT_STORE_BACKEND: str = "local"
    OBJECT_STORE_LOCAL_DIR: str = "data/object_store"
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_BUCKET: str = "twitter-media"
    SIGNED_URL_TTL_SECONDS: int = 3600
    # Internal media proxy path written into backup payloads.
    MEDIA_URL_PREFIX: str = "/api/platforms/twitter/media"

    # -------------------------------------------------------------------------
    # Scrape provider
    # -------------------------------------------------------------------------
    SCRAPE_PROVIDER: str = "apify"
    APIFY_API_TOKEN: str | None = None
    APIFY_BASE_URL: str = "https://api.apify.com"
    APIFY_TIMELINE_ACTOR_ID: str = "apidojo~tweet-scraper"
    APIFY_SOCIAL_GRAPH_ACTOR_ID: str = "apidojo~twitter-user-scraper"
    APIFY_POLL_INTERVAL_SECONDS: float = 3.0
    APIFY_RUN_TIMEOUT_SECONDS: int = 900
    APIFY_HTTP_TIMEOUT_SECONDS: float = 30.0

    # -------------------------------------------------------------------------
    # Pricing & limits
    # -------------------------------------------------------------------------
    # Timeline axis (tweets/replies): base price per query covers the included
    # items, every item beyond that is billed at the marginal price.
    TIMELINE_QUERY_BASE_USD: float = 0.016
    TIMELINE_INCLUDED_ITEMS: int = 40
    TIMELINE_EXTRA_ITEM_USD: float = 0.0004

    # Social graph axis (followers/following)
    SOCIAL_GRAPH_QUERY_BASE_USD: float = 0.0
    SOCIAL_GRAPH_INCLUDED_ITEMS: int = 0
    SOCIAL_GRAPH_ITEM_USD: float = 0.0004

    SCRAPE_MIN_TIMELINE_ITEMS: int = 10
    SCRAPE_DEFAULT_TIMELINE_ITEMS: int = 500
    # Free-tier ceiling
    SCRAPE_MAX_TIMELINE_ITEMS: int = 1000
    SCRAPE_MIN_SOCIAL_GRAPH_ITEMS: int = 50
    SCRAPE_MAX_SOCIAL_GRAPH_ITEMS: int = 2000
    SCRAPE_MAX_COST_PER_RUN_USD: float = 1.00
    SCRAPE_MONTHLY_BUDGET_USD: float = 5.00

    MEDIA_PIPELINE_WORKERS: int = 6
    BACKUP_JOB_QUEUE_TIMEOUT_SECONDS: int = 300
    ARCHIVE_MAX_BYTES: int = 2 * 1024 * 1024 * 1024

    # -------------------------------------------------------------------------
    # Guest retention
    # -------------------------------------------------------------------------
    GUEST_RETENTION_DAYS: int = 30
    GUEST_CLEANUP_BATCH_LIMIT: int = 500

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------
    # delivery mode: "log" (no-op, logs only) | "deliver" (actually send)
    NOTIFICATION_DELIVERY_MODE: str = "log"
    SMTP_HOST: str | None = None
    SMTP_PORT: int | None = None
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM_ADDRESS: str = "no-reply@socialvault.local"

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once and reused.

    Returns:
        Settings: Validated settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
