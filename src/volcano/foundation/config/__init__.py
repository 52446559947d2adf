"""Configuration management using pydantic-settings."""

from .settings import (
    AgentSettings,
    AuthSettings,
    DiscoverySettings,
    LoggingSettings,
    PoolSettings,
    RetrySettings,
    TelemetrySettings,
    VolcanoSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "AgentSettings",
    "AuthSettings",
    "DiscoverySettings",
    "LoggingSettings",
    "PoolSettings",
    "RetrySettings",
    "TelemetrySettings",
    "VolcanoSettings",
    "clear_settings_cache",
    "get_settings",
]
