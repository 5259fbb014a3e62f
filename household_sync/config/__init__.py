"""Configuration package."""

from household_sync.config.settings import (
    AppSettings,
    BackendSettings,
    CacheSettings,
    RetrySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "BackendSettings",
    "CacheSettings",
    "RetrySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
