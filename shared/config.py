"""
Shared configuration management for the Subscription Entitlements service.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden with an ``ENTITLEMENTS_``-prefixed
    environment variable, e.g. ``ENTITLEMENTS_CACHE_TTL_SECONDS=600``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENTS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Subscription platform
    platform_api_url: str = "https://api.polar.sh"
    platform_api_token: str = ""
    platform_request_timeout: float = Field(default=10.0, gt=0)
    platform_page_limit: int = Field(default=100, ge=1, le=100)

    # Fetcher resilience
    fetch_retry_attempts: int = Field(default=3, ge=1)
    fetch_retry_base_delay: float = Field(default=0.5, ge=0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_timeout: float = Field(default=30.0, gt=0)

    # Entitlement cache
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_hard_ceiling_seconds: float = Field(default=86400.0, gt=0)
    cache_refresh_timeout_seconds: float = Field(default=10.0, gt=0)
    cache_max_records: int = Field(default=10000, ge=1)
    cache_housekeeping_interval_seconds: float = Field(default=600.0, gt=0)

    # Webhooks; an empty secret disables signature verification
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = Field(default=300, ge=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
