"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated defaults for the workflow engine. Anything a
Workflow or ToolRuntime is not given explicitly is read from here.

Example:
    >>> from volcano.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.pool.max_size
    16
    >>> settings.agent.max_tool_iterations
    4

    # Or with environment variables:
    # VOLCANO_POOL_MAX_SIZE=4
    # VOLCANO_AGENT_TIMEOUT=120
    # VOLCANO_LOG_FORMAT=json
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, NonNegativeFloat, PositiveFloat, PositiveInt, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolSettings(BaseSettings):
    """Tool-server session pool."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_POOL_", extra="ignore")

    max_size: PositiveInt = Field(default=16, description="Max live sessions per process")
    idle_timeout: PositiveFloat = Field(default=30.0, description="Seconds before an idle session is closed")
    sweep_interval: PositiveFloat = Field(default=5.0, description="Seconds between idle sweeps")


class DiscoverySettings(BaseSettings):
    """Tool-discovery cache."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_DISCOVERY_", extra="ignore")

    ttl: PositiveFloat = Field(default=60.0, description="Seconds a discovered tool list stays fresh")


class RetrySettings(BaseSettings):
    """Default per-step retry configuration."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_RETRY_", extra="ignore")

    attempts: Annotated[int, Field(ge=1, le=20)] = 3
    delay: NonNegativeFloat | None = Field(default=None, description="Fixed wait between attempts")
    backoff: PositiveFloat | None = Field(default=None, description="Exponential factor (1s * factor^n)")
    backoff_base: PositiveFloat = Field(default=1.0, description="First backoff wait in seconds")

    @model_validator(mode="after")
    def _exclusive(self) -> RetrySettings:
        if self.delay is not None and self.backoff is not None:
            raise ValueError("retry delay and backoff are mutually exclusive")
        return self


class AgentSettings(BaseSettings):
    """Workflow-level defaults."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_AGENT_", extra="ignore")

    timeout: PositiveFloat = Field(default=60.0, description="Per model/tool call timeout in seconds")
    context_max_chars: PositiveInt = 20_480
    context_max_tool_results: Annotated[int, Field(ge=0)] = 8
    max_tool_iterations: PositiveInt = 4
    max_delegations: PositiveInt = 10
    disable_parallel_tool_execution: bool = False


class AuthSettings(BaseSettings):
    """Credential handling for protected tool servers."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_AUTH_", extra="ignore")

    token_expiry_buffer: NonNegativeFloat = Field(default=60.0, description="Refresh this many seconds before expiry")
    http_timeout: PositiveFloat = 30.0


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"


class TelemetrySettings(BaseSettings):
    """Span/metric emission."""

    model_config = SettingsConfigDict(env_prefix="VOLCANO_TELEMETRY_", extra="ignore")

    enabled: bool = False
    service_name: str = "volcano"


class VolcanoSettings(BaseSettings):
    """Root settings for the workflow engine.

    Loads configuration from environment variables with VOLCANO_ prefix.

    Example environment variables:
        VOLCANO_POOL_MAX_SIZE=8
        VOLCANO_DISCOVERY_TTL=120
        VOLCANO_RETRY_ATTEMPTS=5
        VOLCANO_AGENT_DISABLE_PARALLEL_TOOL_EXECUTION=true
        VOLCANO_TELEMETRY_ENABLED=true
    """

    model_config = SettingsConfigDict(
        env_prefix="VOLCANO_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Enable debug mode")

    pool: PoolSettings = Field(default_factory=PoolSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    @computed_field
    @property
    def telemetry_enabled(self) -> bool:
        return self.telemetry.enabled


@lru_cache(maxsize=1)
def get_settings() -> VolcanoSettings:
    """Get the global settings instance (cached)."""
    return VolcanoSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next get_settings() re-reads the environment."""
    get_settings.cache_clear()
