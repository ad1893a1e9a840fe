"""
Runtime configuration loaded from the environment.

All variables use the META_ prefix and may also come from a .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MetaSettings(BaseSettings):
    """Configuration surface for the Meta API client runtime."""

    model_config = SettingsConfigDict(
        env_prefix="META_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Credentials and application identity
    access_token: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    business_id: Optional[str] = None

    # Endpoint
    base_url: str = "https://graph.facebook.com"
    api_version: str = "v23.0"

    # Token lifecycle
    auto_refresh: bool = False
    refresh_threshold_seconds: float = Field(default=86400.0, ge=0)
    validation_interval_seconds: float = Field(default=300.0, ge=0)

    # Quota tracking
    rate_limit_tier: str = "development"
    quota_max_wait_seconds: float = Field(default=300.0, ge=0)

    # Transport and retries
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    backoff_jitter_seconds: float = Field(default=1.0, ge=0)

    @field_validator("rate_limit_tier")
    @classmethod
    def _known_tier(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ("development", "standard"):
            raise ValueError("rate_limit_tier must be 'development' or 'standard'")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def has_app_credentials(self) -> bool:
        """Whether app id and secret are both configured."""
        return bool(self.app_id and self.app_secret)


@lru_cache
def get_settings() -> MetaSettings:
    """Get the process-wide settings instance."""
    return MetaSettings()
