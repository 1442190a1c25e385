"""
Billing Warehouse Aggregates
Centralized Configuration Management

Pydantic settings with environment variable support, validation, and type safety
for the warehouse connection, the artifact store, and the refresh engine.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Warehouse database configuration (PostgreSQL by default)"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="billing_warehouse", alias="database", description="Database name")
    user: str = Field(default="warehouse", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Async database URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis configuration for the redis artifact backend"""

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


class AggregationSettings(BaseSettings):
    """Aggregate materialization and refresh configuration"""

    model_config = SettingsConfigDict(env_prefix="AGGREGATES_")

    store_backend: str = Field(default="sql", description="Artifact backend: sql, redis or memory")
    redis_namespace: str = Field(default="aggregates", description="Key namespace for the redis backend")
    register_catalog: bool = Field(default=True, description="Register the built-in aggregate catalog at start-up")
    refresh_on_startup: bool = Field(default=False, description="Schedule a refresh for unpopulated artifacts at start-up")
    default_refresh_mode: str = Field(default="full", description="Refresh mode used when none is given")
    auto_create_tables: bool = Field(default=True, description="Create missing tables at start-up")
    refresh_timeout_seconds: Optional[float] = Field(default=None, description="Timeout applied by CLI/flow trigger sources")
    decimal_precision: int = Field(default=28, description="Decimal digits used when averaging decimal measures")
    api_url: Optional[str] = Field(default=None, description="Serving API base URL; CLI and flow triggers post refreshes there when set")
    request_timeout: float = Field(default=300.0, description="HTTP timeout for remote refresh triggers")

    @field_validator("store_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend name"""
        allowed = ["sql", "redis", "memory"]
        if v.lower() not in allowed:
            raise ValueError(f"Store backend must be one of: {allowed}")
        return v.lower()

    @field_validator("default_refresh_mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate refresh mode"""
        allowed = ["full", "incremental"]
        if v.lower() not in allowed:
            raise ValueError(f"Refresh mode must be one of: {allowed}")
        return v.lower()

    @field_validator("decimal_precision")
    @classmethod
    def validate_precision(cls, v: int) -> int:
        """Averages must not be narrower than the default decimal context"""
        if v < 28:
            raise ValueError("Decimal precision must be at least 28 digits")
        return v


class DataLakeSettings(BaseSettings):
    """Parquet export location for the frame-backed source"""

    model_config = SettingsConfigDict(env_prefix="DATA_")

    lake_path: str = Field(default="./data", description="Data lake root path")
    curated_path: str = Field(default="./data/curated", description="Curated zone path")
    fact_file: str = Field(default="fact_billing.parquet", description="Fact table export")
    customer_file: str = Field(default="dim_customer.parquet", description="Customer dimension export")
    month_file: str = Field(default="dim_month.parquet", description="Month dimension export")


class SecuritySettings(BaseSettings):
    """API security configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Rate limiting
    rate_limit_requests: int = Field(default=100, alias="RATE_LIMIT_REQUESTS", description="Rate limit requests")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS", description="Rate limit window")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8088"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Logging configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


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
    app_name: str = Field(default="billing-aggregates", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    api_workers: int = Field(default=1, alias="API_WORKERS", description="API workers")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    data_lake: DataLakeSettings = Field(default_factory=DataLakeSettings)
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


# Convenience function for accessing settings
settings = get_settings()
