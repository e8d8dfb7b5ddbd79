"""
Shared configuration management for the MP Session Broker.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BROKER_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistence
    postgres_dsn: str = Field(default="postgres://localhost:5432/broker")
    session_backend: str = Field(default="postgres", description="postgres | memory")

    # Upstream platform
    upstream_base_url: str = Field(default="https://mp.weixin.qq.com")
    upstream_timeout_seconds: float = Field(default=15.0)

    # Sessions
    session_ttl_days: int = Field(default=4)
    session_cookie_name: str = Field(default="auth-key")
    session_header_name: str = Field(default="X-Auth-Key")
    correlation_cookie_name: str = Field(default="uuid")

    # Inbound identity, set by the auth layer in front of the broker
    trusted_user_header: str = Field(default="X-User-Id")

    # Upstream admission queue (seconds)
    rate_limit_min_interval: float = Field(default=1.0)
    rate_limit_slowdown_floor: float = Field(default=5.0)
    rate_limit_slowdown_cap: float = Field(default=30.0)
    rate_limit_slowdown_duration: float = Field(default=60.0)


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
