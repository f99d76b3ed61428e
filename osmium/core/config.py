"""
Osmium Configuration

Configuration management with environment variable support.
Implements secure defaults and validation for Redis and cache settings.
"""

from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import (
    COMPRESSION_THRESHOLD_BYTES,
    DEFAULT_MAX_RETRIES_PER_REQUEST,
    DEFAULT_NAMESPACE,
    DEFAULT_REDIS_HOST,
    DEFAULT_REDIS_PORT,
    DEFAULT_TTL_SECONDS,
)

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )

    # Redis connection
    REDIS_URL: Optional[str] = Field(
        default=None,
        description="Redis connection URL (redis://, rediss:// or unix://)",
    )
    REDIS_HOST: str = Field(default=DEFAULT_REDIS_HOST, description="Redis host")
    REDIS_PORT: int = Field(
        default=DEFAULT_REDIS_PORT, ge=1, le=65535, description="Redis port"
    )
    REDIS_USERNAME: Optional[str] = Field(
        default=None, description="Redis ACL username"
    )
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Redis password")
    REDIS_CLUSTER_NODES: str = Field(
        default="",
        description="Redis cluster nodes (comma-separated host:port pairs)",
    )
    REDIS_MAX_RETRIES_PER_REQUEST: int = Field(
        default=DEFAULT_MAX_RETRIES_PER_REQUEST,
        ge=0,
        le=20,
        description="Retries per command on connection and timeout errors",
    )
    REDIS_LAZY_CONNECT: bool = Field(
        default=False, description="Skip the startup connection check"
    )
    REDIS_HANDLE_SIGNALS: bool = Field(
        default=True,
        description="Close Redis gracefully on SIGTERM/SIGINT",
    )
    REDIS_OTEL_INSTRUMENTATION: bool = Field(
        default=False, description="Enable OpenTelemetry Redis instrumentation"
    )

    # Cache behaviour
    CACHE_NAMESPACE: str = Field(
        default=DEFAULT_NAMESPACE, min_length=1, description="Cache key namespace"
    )
    CACHE_DEFAULT_TTL: int = Field(
        default=DEFAULT_TTL_SECONDS,
        ge=1,
        description="Default time to live for cache entries in seconds",
    )
    CACHE_COMPRESSION_THRESHOLD: int = Field(
        default=COMPRESSION_THRESHOLD_BYTES,
        ge=0,
        description="Serialized size in bytes above which values are encoded",
    )

    # Development and debugging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def redis_cluster_nodes_list(self) -> List[str]:
        """Get cluster nodes as list."""
        return [
            node.strip() for node in self.REDIS_CLUSTER_NODES.split(",") if node.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
