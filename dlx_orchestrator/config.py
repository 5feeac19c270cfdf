"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for orchestration tuning - timeouts,
cache sizing, stream buffering and budget alerting are never hardcoded
elsewhere.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_json: bool = Field(
        default=False,
        description="Emit JSON logs (forced on in production)",
    )
    cors_allowed_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins for the HTTP surface",
    )

    # ------------------------------------------------------------------ #
    # Provider configuration
    # ------------------------------------------------------------------ #
    providers_file: str = Field(
        default="",
        description="JSON file seeding providers, models and provider_pricing",
    )

    # ------------------------------------------------------------------ #
    # Request execution
    # ------------------------------------------------------------------ #
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Deadline for a single provider call with no response",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    # ------------------------------------------------------------------ #
    # Provider registry & health probing
    # ------------------------------------------------------------------ #
    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    health_probe_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=30,
        description="Per-probe timeout for GET {endpoint}/v1/models",
    )
    registry_cache_ttl_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long provider/model listings are served from memory",
    )

    # ------------------------------------------------------------------ #
    # Response cache
    # ------------------------------------------------------------------ #
    cache_ttl_minutes: float = Field(default=60.0, gt=0)
    cache_max_entries: int = Field(default=100, ge=1)
    cache_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    cache_persistence_enabled: bool = Field(
        default=False,
        description="Write cached responses behind to redis_url",
    )
    redis_url: str = Field(
        default="",
        description="Redis URL for cache write-behind. Empty = in-memory backend",
    )

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #
    stream_max_buffer: int = Field(default=50, ge=1)
    stream_min_chunk: int = Field(default=10, ge=0)
    stream_max_delay_ms: float = Field(default=16.0, gt=0)

    # ------------------------------------------------------------------ #
    # Context window & routing
    # ------------------------------------------------------------------ #
    context_reserve_tokens: int = Field(
        default=1024,
        ge=0,
        description="Tokens held back from the model window for the completion",
    )
    metrics_window_size: int = Field(
        default=50,
        ge=1,
        description="Trailing outcomes per model used for success rate / latency",
    )

    # ------------------------------------------------------------------ #
    # Usage & budgets
    # ------------------------------------------------------------------ #
    budget_alert_threshold_pct: float = Field(default=80.0, gt=0, le=100)

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        if self.environment == Environment.PROD:
            self.log_json = True
        return self

    @model_validator(mode="after")
    def _validate_stream_buffer(self) -> Settings:
        if self.stream_min_chunk > self.stream_max_buffer:
            raise ValueError("stream_min_chunk cannot exceed stream_max_buffer")
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEV

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_minutes * 60.0


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings instance.

    Call get_settings.cache_clear() in tests to pick up overrides.
    """
    return Settings()
