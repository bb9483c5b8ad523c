"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("RS_ENV", "dev").lower()

# Legacy shared key (tolerated in DEV only)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "dev_local", "test"}

# Recognised scopes
API_SCOPES = {"user", "service", "admin"}

# Scheduler (optional)
SCHEDULER_ENABLED = os.getenv("RS_SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}

NOTIFICATION_SINKS = {"log", "webhook"}


class Settings(BaseSettings):
    """Environment configuration for the readshare backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///readshare.db"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED

    # --- Delivery queue --------------------------------------------------
    DELIVERY_BATCH_SIZE: int = Field(default=10, ge=1, le=500)
    DELIVERY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=20)
    DELIVERY_INTERVAL_SECONDS: int = Field(default=15, ge=1)
    DELIVERY_RETRY_BACKOFF_SECONDS: int = Field(default=0, ge=0)
    DELIVERY_VISIBILITY_TIMEOUT_SECONDS: int = Field(default=300, ge=1)

    # --- Notification sink ----------------------------------------------
    NOTIFICATION_SINK: str = "log"
    NOTIFICATION_WEBHOOK_URL: str | None = None
    NOTIFICATION_WEBHOOK_TOKEN: str | None = None
    SINK_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Declined requests stay silent unless enabled.
    NOTIFY_ON_DECLINE: bool = False

    # --- Realtime --------------------------------------------------------
    REALTIME_PING_SECONDS: int = Field(default=20, ge=1)
    REALTIME_QUEUE_SIZE: int = Field(default=256, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("NOTIFICATION_SINK")
    @classmethod
    def _check_sink(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in NOTIFICATION_SINKS:
            raise ValueError(f"NOTIFICATION_SINK must be one of {sorted(NOTIFICATION_SINKS)}")
        return cleaned

    @field_validator("NOTIFICATION_WEBHOOK_URL", "NOTIFICATION_WEBHOOK_TOKEN")
    @classmethod
    def _strip_empty(cls, value: str | None) -> str | None:
        """Normalise empty strings to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "readshare-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_SCOPES",
    "SCHEDULER_ENABLED",
    "NOTIFICATION_SINKS",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
