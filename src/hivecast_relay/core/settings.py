"""Application settings and configuration.

This module defines all configuration options for the Hivecast relay.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Hivecast Relay", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./hivecast.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Token store backend selection. "memory" loses every token on restart.
    token_store_backend: Literal["database", "memory"] = Field(
        default="database",
        alias="TOKEN_STORE_BACKEND",
    )
    require_durable_store: bool = Field(default=True, alias="REQUIRE_DURABLE_STORE")

    # Deep links and collaborator endpoints
    base_url: str = Field(default="https://skatehive.app", alias="RELAY_BASE_URL")
    hive_api_url: str = Field(default="https://api.hive.blog", alias="HIVE_API_URL")
    identity_registry_url: str | None = Field(default=None, alias="IDENTITY_REGISTRY_URL")
    http_timeout_seconds: float = Field(default=5.0, alias="RELAY_HTTP_TIMEOUT_SECONDS")
    notifications_fetch_limit: int = Field(default=100, alias="HIVE_NOTIFICATIONS_LIMIT")

    # Delivery behaviour
    send_max_retries: int = Field(default=3, alias="RELAY_SEND_MAX_RETRIES")
    send_retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="RELAY_SEND_RETRY_DELAY_SECONDS",
    )
    send_interval_seconds: float = Field(default=0.5, alias="RELAY_SEND_INTERVAL_SECONDS")
    max_tokens_per_request: int = Field(default=100, alias="RELAY_MAX_TOKENS_PER_REQUEST")
    user_concurrency: int = Field(default=5, ge=1, alias="RELAY_USER_CONCURRENCY")
    default_batch_size: int = Field(default=5, ge=1, le=20, alias="RELAY_DEFAULT_BATCH_SIZE")
    dedup_history_limit: int = Field(default=1000, alias="RELAY_DEDUP_HISTORY_LIMIT")

    # Scheduled mode
    schedule_window_minutes: int = Field(default=5, alias="RELAY_SCHEDULE_WINDOW_MINUTES")
    scheduled_recheck_hours: int = Field(default=23, alias="RELAY_SCHEDULED_RECHECK_HOURS")

    # Enrichment
    cache_ttl_seconds: float = Field(default=300.0, alias="RELAY_CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=1000, alias="RELAY_CACHE_MAX_ENTRIES")
    vote_enrichment_probability: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        alias="RELAY_VOTE_ENRICHMENT_PROBABILITY",
    )
    reblog_enrichment_probability: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        alias="RELAY_REBLOG_ENRICHMENT_PROBABILITY",
    )

    # Webhook and trigger security
    webhook_max_age_seconds: int = Field(default=300, alias="WEBHOOK_MAX_AGE_SECONDS")
    cron_secret: str | None = Field(default=None, alias="CRON_SECRET")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()
