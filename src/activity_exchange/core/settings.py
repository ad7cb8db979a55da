"""Application settings and configuration.

This module defines all configuration options for the activity exchange engine.
Settings are loaded from environment variables with sensible defaults.
"""

from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every tunable of the dispatcher, inbox and moderation components lives here.
    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Activity Exchange", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./exchange.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Local site identity, used for same-origin checks
    site_url: str = Field(default="http://localhost:8000", alias="SITE_URL")

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    http_user_agent: str = Field(
        default="activity-exchange/0.1.0",
        alias="HTTP_USER_AGENT",
    )

    # Dispatcher tunables
    outbox_batch_size: int = Field(default=100, alias="OUTBOX_BATCH_SIZE")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_delay_seconds: int = Field(default=3600, alias="RETRY_DELAY_SECONDS")
    retry_error_codes: list[int] = Field(
        default=[408, 429, 500, 502, 503, 504],
        alias="RETRY_ERROR_CODES",
    )
    retry_ticket_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="RETRY_TICKET_TTL_SECONDS",
    )
    relays: list[str] = Field(default=[], alias="RELAYS")

    # Inbox ingestion
    inbox_persist_types: list[str] = Field(
        default=["Create", "Update", "Follow", "Like", "Announce"],
        alias="INBOX_PERSIST_TYPES",
    )

    # Moderation: newline separated, matched as site-wide keywords
    disallowed_keys: str = Field(default="", alias="DISALLOWED_KEYS")

    # Background task worker
    task_poll_interval_seconds: float = Field(default=5.0, alias="TASK_POLL_INTERVAL_SECONDS")
    task_batch_limit: int = Field(default=20, alias="TASK_BATCH_LIMIT")
    task_worker_enabled: bool = Field(default=True, alias="TASK_WORKER_ENABLED")

    # Discovery cache
    discovery_cache_ttl_seconds: int = Field(default=3600, alias="DISCOVERY_CACHE_TTL_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.

        Returns:
            Database URL compatible with synchronous database drivers
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def site_host(self) -> str:
        """Return the lower-cased host of the local site.

        Returns:
            Hostname component of ``site_url``, empty when it cannot be parsed
        """
        return (urlparse(self.site_url).hostname or "").lower()

    @property
    def disallowed_keywords(self) -> list[str]:
        """Return the site-wide disallow list as individual entries.

        Returns:
            Non-empty, stripped lines of ``disallowed_keys``
        """
        return [line.strip() for line in self.disallowed_keys.splitlines() if line.strip()]


settings = Settings()
