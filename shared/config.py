"""
Shared configuration management for the upstream item proxy.
"""

from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Cached payloads are never kept longer than this, whatever the environment says.
MAX_CACHE_TTL_SECONDS = 60


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Upstream hosts
    passthrough_upstream: str = "https://apis.roproxy.com/"
    direct_upstream: str = "https://apis.roblox.com/"
    catalog_upstream: str = "https://catalog.roblox.com/"
    thumbnail_upstream: str = "https://thumbnails.roblox.com/"
    games_upstream: str = "https://games.roblox.com/"
    avatar_upstream: str = "https://avatar.roblox.com/"
    inventory_upstream: str = "https://inventory.roblox.com/"

    # Opaque credential forwarded to the direct host only
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("api_key", "PROXY_API_KEY", "ROBLOX_API_KEY"),
    )

    # Upstream calls
    request_timeout_seconds: float = 10.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.2
    retry_max_delay_seconds: float = 2.0

    # Cache
    cache_max_entries: int = 1000
    cache_json_ttl_seconds: float = 30
    cache_binary_ttl_seconds: float = 60
    aggregate_cache_ttl_seconds: float = 30
    partial_cache_ttl_seconds: float = 5

    # Aggregation
    max_pages: int = 1000
    aggregation_concurrency: int = 4

    # HTTP surface
    cors_allow_origins: List[str] = ["*"]

    @field_validator(
        "cache_json_ttl_seconds",
        "cache_binary_ttl_seconds",
        "aggregate_cache_ttl_seconds",
        "partial_cache_ttl_seconds",
    )
    @classmethod
    def _clamp_ttl(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("cache TTL must be positive")
        return min(value, MAX_CACHE_TTL_SECONDS)

    @field_validator("retry_max_attempts", "cache_max_entries", "max_pages", "aggregation_concurrency")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "passthrough_upstream",
        "direct_upstream",
        "catalog_upstream",
        "thumbnail_upstream",
        "games_upstream",
        "avatar_upstream",
        "inventory_upstream",
    )
    @classmethod
    def _trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else f"{value}/"


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
