"""
Shared configuration management for the Solutions access layer.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="SOLUTIONS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistence
    storage_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/solutions")
    postgres_min_pool: int = Field(default=2)
    postgres_max_pool: int = Field(default=10)

    # Rate limiting
    rate_limit_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    rate_limits_file: Optional[str] = Field(default=None)
    rate_limit_sweep_interval_seconds: int = Field(default=300)

    # Content security
    allowed_embed_domains: List[str] = Field(default_factory=lambda: [
        "youtube.com",
        "www.youtube.com",
        "youtu.be",
        "drive.google.com",
        "docs.google.com",
        "vimeo.com",
        "player.vimeo.com",
    ])
    allowed_upload_types: List[str] = Field(default_factory=lambda: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ])
    max_upload_bytes: int = Field(default=2 * 1024 * 1024)
    max_input_length: int = Field(default=10000)


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
