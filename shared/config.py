"""
Shared configuration management for the Access Core.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")


class AccessCoreConfig(BaseConfig):
    """Settings for the permission cache, evaluator and lock manager."""

    service_name: str = Field(default="access_core")

    # Shared store
    cache_key_prefix: str = Field(default="access")
    store_timeout_seconds: float = Field(default=0.5, gt=0)

    # Cache TTLs
    cache_default_ttl_seconds: int = Field(default=300, ge=0)
    permission_bundle_ttl_seconds: int = Field(default=1800, ge=0)

    # Locks
    lock_default_ttl_seconds: int = Field(default=900, gt=0)
    lock_max_ttl_seconds: int = Field(default=86400, gt=0)

    # Store circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1)
    circuit_breaker_recovery_timeout: float = Field(default=30.0, ge=0)

    # Redis connection pool
    redis_max_connections: Optional[int] = Field(default=None)


def get_config(**overrides) -> AccessCoreConfig:
    """Get configuration for the access core."""
    return AccessCoreConfig(**overrides)
