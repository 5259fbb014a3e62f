"""
Configuration Management for Household Sync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Cache horizons, retry budgets and the backend location are all tunable
without touching the pipeline code, and are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendSettings(BaseSettings):
    """Persistence backend (HTTP API) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_BACKEND_",
        extra="ignore"
    )

    base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the finance API"
    )
    api_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent with every request"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout for a single backend call"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended."""
        return v.rstrip("/")


class CacheSettings(BaseSettings):
    """Read cache horizons."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_CACHE_",
        extra="ignore"
    )

    stale_time_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long a fetched value is considered fresh"
    )
    gc_time_seconds: float = Field(
        default=600.0,
        ge=0.0,
        description="How long an unobserved entry is kept before eviction"
    )


class RetrySettings(BaseSettings):
    """
    Retry budgets per error kind.

    Only network failures are retried automatically.
    Conflicts are retried only through an explicit resolver action.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_RETRY_",
        extra="ignore"
    )

    network_max_retries: int = Field(
        default=3,
        ge=3,
        le=5,
        description="Automatic retries for network failures"
    )
    network_base_delay_seconds: float = Field(
        default=1.0,
        ge=1.0,
        le=2.0,
        description="First backoff delay"
    )
    network_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.5,
        le=2.0,
        description="Exponential backoff multiplier"
    )
    network_max_delay_seconds: float = Field(
        default=30.0,
        ge=1.0,
        description="Upper bound for a single backoff delay"
    )
    conflict_max_retries: int = Field(
        default=2,
        ge=0,
        description="Explicit resolution attempts allowed per conflict"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Include raw error details in user-facing messages"
    )
    default_owner_id: str = Field(
        default="household",
        description="Owner id used by the operator UI"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def backend(self) -> BackendSettings:
        return BackendSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def retry(self) -> RetrySettings:
        return RetrySettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name}_error entries for the ones that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("backend", "cache", "retry", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
