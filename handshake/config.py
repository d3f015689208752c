"""Application settings and logging configuration."""

from __future__ import annotations

import ipaddress
import logging
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "handshake-service"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "handshake-service"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    public_base_url: str = "http://localhost:8000"
    sweeper_enabled: bool = True
    sweep_interval_seconds: float = Field(default=5.0, gt=0)
    trusted_proxies: list[str] = Field(default_factory=list)

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, value: list[str]) -> list[str]:
        """Require every trusted proxy to be an IP address or CIDR block."""
        for entry in value:
            try:
                ipaddress.ip_network(entry.strip(), strict=False)
            except ValueError as exc:
                raise ValueError(f"Invalid trusted proxy: {entry!r}.") from exc
        return value


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class ChallengeSettings(BaseModel):
    """Stage 1 challenge issuance and callback delivery settings."""

    webhook_secret: SecretStr
    ttl_seconds: int = Field(default=300, ge=1)
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)
    delivery_initial_backoff_seconds: float = Field(default=1.0, gt=0)
    delivery_max_backoff_seconds: float = Field(default=30.0, gt=0)


class CooldownSettings(BaseModel):
    """Stage failure cooldown settings."""

    stage_failure_seconds: int = Field(default=86400, ge=0)


class RateLimitSettings(BaseModel):
    """Token bucket thresholds for conditional profile updates."""

    profile_bucket_capacity: int = Field(default=1, ge=1, le=2)
    profile_refill_per_second: float = Field(default=0.2, gt=0)


class UploadSettings(BaseModel):
    """Resumable upload settings."""

    url_signing_secret: SecretStr
    spool_dir: Path = Path("/tmp/handshake-uploads")
    max_size_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    url_ttl_seconds: int = Field(default=3600, ge=1)
    stall_seconds: int = Field(default=60, ge=1)


class StreamSettings(BaseModel):
    """Server-sent event stream settings."""

    event_budget: int = Field(default=1000, ge=1)
    events_per_second: float = Field(default=200.0, ge=100.0)
    batch_size: int = Field(default=50, ge=1)
    reconnect_budget_ms: int = Field(default=500, ge=1)
    stall_grace_seconds: float = Field(default=30.0, ge=0)
    ack_grace_seconds: float = Field(default=30.0, ge=0)
    keepalive_seconds: float = Field(default=5.0, gt=0)
    replay_buffer_size: int = Field(default=20000, ge=1)
    replay_buffer_ttl_seconds: float = Field(default=60.0, gt=0)


class SigningKeySettings(BaseModel):
    """Rotating acceptance-token signing key settings."""

    encryption_key: SecretStr
    window_seconds: int = Field(default=600, ge=60)
    overlap_seconds: int = Field(default=120, ge=1)
    token_ttl_seconds: int = Field(default=300, ge=1)
    cache_refresh_seconds: int = Field(default=60, ge=1)


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    challenge: ChallengeSettings
    upload: UploadSettings
    signing_keys: SigningKeySettings
    cooldown: CooldownSettings = CooldownSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    stream: StreamSettings = StreamSettings()


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
