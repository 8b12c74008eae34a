"""Application settings and configuration.

This module defines all configuration options for the Bitcoin Blocks game engine.
Settings are loaded from environment variables with sensible defaults.
"""

import json
from decimal import Decimal
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Bitcoin Blocks", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Database configuration
    database_url: str = Field(default="sqlite:///./bitcoin_blocks.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Redis backs the rate-limit counters; an empty URL keeps them in-process
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")

    # Administrative allow-list
    admin_principal_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="ADMIN_PRINCIPAL_IDS",
    )
    payment_worker_principal_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="PAYMENT_WORKER_PRINCIPAL_IDS",
    )
    admin_rate_limit_per_minute: int = Field(default=30, alias="ADMIN_RATE_LIMIT_PER_MINUTE")

    # Block explorer (mempool.space compatible)
    explorer_base_url: str = Field(default="https://mempool.space", alias="EXPLORER_BASE_URL")
    explorer_timeout_seconds: float = Field(default=10.0, alias="EXPLORER_TIMEOUT_SECONDS")
    explorer_max_attempts: int = Field(default=3, alias="EXPLORER_MAX_ATTEMPTS")
    explorer_backoff_seconds: float = Field(default=1.0, alias="EXPLORER_BACKOFF_SECONDS")
    explorer_max_response_bytes: int = Field(
        default=2 * 1024 * 1024,
        alias="EXPLORER_MAX_RESPONSE_BYTES",
    )
    explorer_block_cache_seconds: float = Field(
        default=600.0,
        alias="EXPLORER_BLOCK_CACHE_SECONDS",
    )
    explorer_recent_cache_seconds: float = Field(
        default=30.0,
        alias="EXPLORER_RECENT_CACHE_SECONDS",
    )

    # Social announcements (Warpcast casts API)
    announce_enabled: bool = Field(default=False, alias="ANNOUNCE_ENABLED")
    announce_base_url: str = Field(default="https://api.warpcast.com", alias="ANNOUNCE_BASE_URL")
    announce_api_key: str | None = Field(default=None, alias="ANNOUNCE_API_KEY")
    announce_timeout_seconds: float = Field(default=15.0, alias="ANNOUNCE_TIMEOUT_SECONDS")
    announce_max_attempts: int = Field(default=3, alias="ANNOUNCE_MAX_ATTEMPTS")
    announce_backoff_seconds: float = Field(default=2.0, alias="ANNOUNCE_BACKOFF_SECONDS")
    announce_rate_limit_per_hour: int = Field(default=5, alias="ANNOUNCE_RATE_LIMIT_PER_HOUR")
    announce_max_response_bytes: int = Field(
        default=256 * 1024,
        alias="ANNOUNCE_MAX_RESPONSE_BYTES",
    )

    # Payment worker hand-off; transfers stay pending for polling when unset
    payment_worker_url: str | None = Field(default=None, alias="PAYMENT_WORKER_URL")
    payment_worker_timeout_seconds: float = Field(
        default=10.0,
        alias="PAYMENT_WORKER_TIMEOUT_SECONDS",
    )
    payment_worker_max_attempts: int = Field(default=3, alias="PAYMENT_WORKER_MAX_ATTEMPTS")
    payment_worker_token: str | None = Field(default=None, alias="PAYMENT_WORKER_TOKEN")

    # Change feed
    realtime_poll_interval_seconds: float = Field(
        default=1.0,
        alias="REALTIME_POLL_INTERVAL_SECONDS",
    )
    realtime_batch_size: int = Field(default=100, alias="REALTIME_BATCH_SIZE")

    # Background block watcher
    block_watcher_enabled: bool = Field(default=False, alias="BLOCK_WATCHER_ENABLED")
    block_watcher_interval_seconds: float = Field(
        default=30.0,
        alias="BLOCK_WATCHER_INTERVAL_SECONDS",
    )
    automation_principal_id: str = Field(
        default="block-watcher",
        alias="AUTOMATION_PRINCIPAL_ID",
    )

    # Default prize configuration used until an administrator saves one
    default_jackpot_amount: Decimal = Field(default=Decimal("5000"), alias="DEFAULT_JACKPOT_AMOUNT")
    default_first_place_amount: Decimal = Field(
        default=Decimal("1000"),
        alias="DEFAULT_FIRST_PLACE_AMOUNT",
    )
    default_second_place_amount: Decimal = Field(
        default=Decimal("500"),
        alias="DEFAULT_SECOND_PLACE_AMOUNT",
    )
    default_currency_type: str = Field(default="$SECOND", alias="DEFAULT_CURRENCY_TYPE")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @field_validator("admin_principal_ids", "payment_worker_principal_ids", mode="before")
    @classmethod
    def _split_principal_list(cls, value: object) -> object:
        """Accept either a JSON array or a comma-separated string."""
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                return json.loads(raw)
            return [item.strip() for item in raw.split(",") if item.strip()]
        return value

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


settings = Settings()  # type: ignore[call-arg]
