"""
PageLens Analytics
Centralized Configuration Management

Pydantic settings with environment variable support. Every upstream constant
(API versions, timeouts, pacing, caps) lives here and is handed to the
components that need it at construction time.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration (shop credential storage)"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="pagelens", alias="database", description="Database name")
    user: str = Field(default="pagelens", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Database URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class ShopifySettings(BaseSettings):
    """Upstream storefront platform configuration"""

    model_config = SettingsConfigDict(env_prefix="SHOPIFY_")

    api_key: str = Field(default="", description="App client id")
    api_secret: SecretStr = Field(default="", description="App client secret, also the OAuth HMAC key")
    scopes: str = Field(
        default="read_analytics,read_orders,read_products,read_reports",
        description="OAuth scopes requested at install",
    )
    shop_domain_suffix: str = Field(default=".myshopify.com", description="Required shop domain suffix")

    # API versions
    api_version: str = Field(default="2025-01", description="Admin REST/GraphQL API version")
    analytics_api_version: str = Field(
        default="2026-01",
        description="API version used for ShopifyQL queries",
    )

    # Timeouts and pacing
    request_timeout_seconds: float = Field(default=10.0, description="Deadline of a single upstream attempt")
    pacing_delay_seconds: float = Field(default=0.2, description="Fixed delay between sequential upstream calls")
    max_retries: int = Field(default=3, description="Attempts for 429/5xx responses")
    retry_backoff_max_seconds: float = Field(default=8.0, description="Upper bound of retry backoff")
    retry_max_seconds: float = Field(default=20.0, description="Total time one call may spend retrying")

    # Result sizes
    analytics_row_limit: int = Field(default=1000, description="LIMIT of analytics queries")
    orders_page_size: int = Field(default=50, description="Orders fetched per GraphQL page")
    line_items_page_size: int = Field(default=50, description="Line items fetched per order")
    max_orders_per_product: int = Field(default=2500, description="Cap on orders read per product")
    products_page_size: int = Field(default=250, description="Products fetched per REST page")
    tags_sample_size: int = Field(default=250, description="Recent orders scanned for tag suggestions")

    default_timezone: str = Field(default="America/New_York", description="Fallback shop timezone")


class CacheSettings(BaseSettings):
    """Comparison result cache configuration"""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    namespace: str = Field(default="pagelens:comparison", description="Redis key namespace")
    ttl_seconds: int = Field(default=1800, description="Time-to-live of a cached comparison")
    products_max_age_seconds: int = Field(default=300, description="Browser cache age of product listings")


class PipelineSettings(BaseSettings):
    """Orchestrator stage budgets and attribution policy"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    session_timeout_seconds: float = Field(default=5.0, description="Session lookup budget")
    cache_timeout_seconds: float = Field(default=3.0, description="Cache lookup budget")
    resolve_timeout_seconds: float = Field(default=30.0, description="URL resolution budget")
    fetch_timeout_seconds: float = Field(default=60.0, description="Joint budget of the data fetch stage")
    attribution_strategy: str = Field(
        default="full_order_total",
        description="Revenue attribution policy: full_order_total or line_item_only",
    )

    @field_validator("attribution_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate attribution strategy name"""
        allowed = ["full_order_total", "line_item_only"]
        if v.lower() not in allowed:
            raise ValueError(f"Attribution strategy must be one of: {allowed}")
        return v.lower()


class SecuritySettings(BaseSettings):
    """Session cookie and CORS configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    secret_key: SecretStr = Field(default="change-me-in-production", description="Session cookie signing key")
    session_cookie_name: str = Field(default="pagelens_shop", alias="SESSION_COOKIE_NAME", description="Session cookie name")
    session_max_age_days: int = Field(default=30, alias="SESSION_MAX_AGE_DAYS", description="Session cookie lifetime")

    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")

    enable_metrics: bool = Field(default=True, alias="ENABLE_METRICS", description="Expose Prometheus metrics")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="pagelens", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    app_url: str = Field(default="http://localhost:3000", alias="APP_URL", description="Public base URL")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    shopify: ShopifySettings = Field(default_factory=ShopifySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
