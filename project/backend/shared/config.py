"""
Configuration management.

Centralized environment variable management and validation.
"""

from typing import Literal, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from shared.errors import ConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # Allow case-insensitive env var matching
        extra="ignore"
    )

    # Environment
    environment: Literal["development", "staging", "production", "test"] = "development"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # LOG_FILE: rotating JSON log file; stdout only when unset
    log_file: Optional[str] = None

    # Ledger store
    # STORE_BACKEND: "postgres" for deployments, "memory" for local runs and tests
    store_backend: Literal["postgres", "memory"] = "memory"
    database_url: Optional[str] = None
    database_pool_min_size: int = 2
    database_pool_max_size: int = 10

    # Redis queue configuration
    redis_url: str = "redis://localhost:6379/0"
    # QUEUE_PREFIX: key prefix for every queue; defaults to "contentforge:{environment}"
    queue_prefix: Optional[str] = None
    worker_poll_timeout: int = 5  # seconds a worker blocks waiting for a job
    scheduler_interval_seconds: int = 30

    # Supabase storage
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    storage_bucket: str = "generated-media"

    # API authentication
    # JWT_SECRET: HS256 secret the API verifies bearer tokens with
    jwt_secret: Optional[str] = None

    # API keys
    openai_api_key: Optional[str] = None
    replicate_api_token: Optional[str] = None

    # Payments (Razorpay)
    payment_enabled: bool = False
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None

    # Credit ledger
    default_free_credits: int = 50
    reservation_ttl_seconds: int = 3600
    ledger_max_conflict_retries: int = 3
    # CREDITS_PER_USD: conversion used when a provider reports a USD cost
    credits_per_usd: int = 100

    # Generation models
    llm_model: str = "gpt-4o"
    tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    image_model: str = "black-forest-labs/flux-schnell"
    video_model: str = "kwaivgi/kling-v2.1"

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v:
            raise ConfigError("REDIS_URL is required")
        if not v.startswith(("redis://", "rediss://")):
            raise ConfigError("REDIS_URL must start with redis:// or rediss://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate Postgres DSN format."""
        if v and not v.startswith(("postgres://", "postgresql://")):
            raise ConfigError("DATABASE_URL must start with postgres:// or postgresql://")
        return v

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate Supabase URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ConfigError("SUPABASE_URL must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate OpenAI API key format."""
        if v and not v.startswith("sk-"):
            raise ConfigError("OPENAI_API_KEY must start with 'sk-'")
        return v

    @field_validator("replicate_api_token")
    @classmethod
    def validate_replicate_api_token(cls, v: Optional[str]) -> Optional[str]:
        """Validate Replicate API token format."""
        if v and not v.startswith("r8_"):
            raise ConfigError("REPLICATE_API_TOKEN must start with 'r8_'")
        return v

    @field_validator("default_free_credits", "reservation_ttl_seconds", "credits_per_usd")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Credit amounts and durations cannot be negative."""
        if v < 0:
            raise ConfigError("Credit settings must be non-negative")
        return v

    @field_validator("ledger_max_conflict_retries")
    @classmethod
    def validate_conflict_retries(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ConfigError("LEDGER_MAX_CONFLICT_RETRIES must be at least 1")
        return v

    @property
    def queue_key_prefix(self) -> str:
        """
        Redis key prefix for queues, environment-aware.

        Keeps local workers off production queues when both share a Redis.
        """
        if self.queue_prefix:
            return self.queue_prefix
        return f"contentforge:{self.environment}"

    def require_database(self) -> str:
        """Return the DSN or fail when the Postgres store is selected without one."""
        if not self.database_url:
            raise ConfigError("DATABASE_URL is required when STORE_BACKEND=postgres")
        return self.database_url


# Singleton instance
try:
    settings = Settings()
except Exception as e:
    # Re-raise as ConfigError for consistency
    if isinstance(e, ConfigError):
        raise
    raise ConfigError(f"Failed to load configuration: {str(e)}") from e
