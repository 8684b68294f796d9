from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables with validation."""

    model_config = SettingsConfigDict(
        env_file=(str(Path(__file__).resolve().parents[1] / ".env"), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    app_name: str = Field(default="TirePlan Billing API", alias="APP_NAME")
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="production",
        alias="APP_ENV",
    )
    app_debug: bool = Field(default=False, alias="APP_DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")
    secret_key: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        alias="SECRET_KEY",
    )

    database_url: str = Field(default="sqlite:///./tireplan.db", alias="DATABASE_URL")
    db_pool_size: int = Field(default=10, ge=1, le=100, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, ge=0, le=200, alias="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, ge=1, le=300, alias="DB_POOL_TIMEOUT")
    db_connect_timeout: int = Field(default=10, ge=1, le=120, alias="DB_CONNECT_TIMEOUT")
    db_statement_timeout_ms: int = Field(default=15000, ge=0, le=600000, alias="DB_STATEMENT_TIMEOUT_MS")

    toss_payments_secret_key: SecretStr = Field(
        default=SecretStr(""),
        alias="TOSS_PAYMENTS_SECRET_KEY",
    )
    toss_payments_base_url: str = Field(
        default="https://api.tosspayments.com/v1",
        alias="TOSS_PAYMENTS_BASE_URL",
    )
    payment_timeout_seconds: float = Field(default=30.0, gt=0, le=120, alias="PAYMENT_TIMEOUT_SECONDS")

    billing_scheduler_enabled: bool = Field(default=True, alias="BILLING_SCHEDULER_ENABLED")
    billing_schedule_cron: str = Field(default="0 2 * * *", alias="BILLING_SCHEDULE_CRON")
    billing_timezone: str = Field(default="Asia/Seoul", alias="BILLING_TIMEZONE")
    billing_max_concurrency: int = Field(default=4, ge=1, le=64, alias="BILLING_MAX_CONCURRENCY")

    dunning_retry_hours: int = Field(default=24, ge=1, alias="DUNNING_RETRY_HOURS")
    dunning_failure_window: int = Field(default=3, ge=1, alias="DUNNING_FAILURE_WINDOW")

    @field_validator("api_v1_prefix")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """Ensure the API prefix starts with a slash and has no trailing slash."""
        normalized = value.strip()
        if not normalized.startswith("/"):
            raise ValueError("API_V1_PREFIX must start with '/'.")
        if len(normalized) > 1 and normalized.endswith("/"):
            normalized = normalized.rstrip("/")
        return normalized

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        """Accept PostgreSQL for deployments and SQLite for local runs."""
        lowered = value.lower()
        if not lowered.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must start with postgresql://, postgresql+psycopg2:// or sqlite://")
        return value

    @field_validator("billing_schedule_cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        from croniter import croniter

        if not croniter.is_valid(value):
            raise ValueError(f"BILLING_SCHEDULE_CRON is not a valid cron expression: {value!r}")
        return value

    @field_validator("billing_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown BILLING_TIMEZONE: {value}") from exc
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()
