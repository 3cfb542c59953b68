"""
Order Processing Engine
Centralized Configuration Management

Pydantic settings for every subsystem the workers and the API touch:
the relational store, the Redis aggregate store, the Kafka job topics
and the pipeline knobs (timeouts, retry budget, leaderboard size).
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="orderflow", description="Database name")
    user: str = Field(default="orderflow", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Database URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Aggregate Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
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


class KafkaSettings(BaseSettings):
    """Kafka Job Queue Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="orderflow-workers", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=50, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    # Topic configuration
    topics_orders: str = Field(default="order-jobs", description="Order processing jobs topic")
    topics_refunds: str = Field(default="refund-jobs", description="Refund processing jobs topic")
    dlq_suffix: str = Field(default=".dlq", description="Dead-letter topic suffix")

    @property
    def topics(self) -> List[str]:
        """List of all job topics"""
        return [self.topics_orders, self.topics_refunds]


class ProcessingSettings(BaseSettings):
    """Order/Refund Pipeline Configuration"""

    model_config = SettingsConfigDict(env_prefix="PROCESSING_")

    job_timeout_seconds: float = Field(default=300, description="Per-job timeout")
    max_attempts: int = Field(default=3, description="Attempts before a job is dead-lettered")
    leaderboard_size: int = Field(default=10, description="Customers kept in the leaderboard snapshot")
    metrics_ttl_days: int = Field(default=365, description="Expiry of aggregate metrics keys")
    notification_channel: str = Field(default="log", description="Notification channel: log or email")
    charge_success_rate: float = Field(default=0.8, description="Simulated gateway charge success rate")
    refund_success_rate: float = Field(default=0.9, description="Simulated gateway refund success rate")

    @property
    def metrics_ttl_seconds(self) -> int:
        return self.metrics_ttl_days * 24 * 60 * 60


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    prometheus_port: int = Field(default=9090, alias="PROMETHEUS_PORT", description="Prometheus port")

    # Logging
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
    app_name: str = Field(default="orderflow", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
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
