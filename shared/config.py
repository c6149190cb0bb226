"""
Shared configuration management for the Telegram Relay.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Messaging provider
    telegram_api_base_url: str = "https://api.telegram.org"
    provider_timeout_seconds: float = 30.0

    # Abuse protection
    max_requests_per_minute: int = Field(default=100, ge=1)
    block_duration_ms: int = Field(default=5 * 60 * 1000, ge=0)
    trust_forwarded_headers: bool = False

    # HTTP surface
    static_dir: str = "public"
    max_upload_bytes: int = 10 * 1024 * 1024
    cors_allow_origins: List[str] = ["*"]


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
