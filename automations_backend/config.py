from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("automations.config")


class ConfigurationError(RuntimeError):
    """Raised when a required server setting (secret, database URL) is missing."""


class Settings(BaseSettings):
    """
    Central configuration for the automations backend.

    - Reads from .env (local) and process environment.
    - Every field is optional at load time; missing pieces surface as a
      ConfigurationError when the code that needs them runs.
    - Ignores extra env vars so adding new ones doesn’t break startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Core app
    # -------------------------------------------------------------------------
    app_name: str = Field(default="Automations Backend", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")
    environment: str = Field(default="local", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # -------------------------------------------------------------------------
    # Secrets
    # -------------------------------------------------------------------------
    # Scheduler trigger secret. GMAIL_SCHEDULER_SECRET wins over CRON_SECRET.
    scheduler_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GMAIL_SCHEDULER_SECRET", "CRON_SECRET"),
    )
    admin_dashboard_secret: Optional[str] = Field(
        default=None,
        alias="ADMIN_DASHBOARD_SECRET",
    )

    # -------------------------------------------------------------------------
    # Gmail OAuth client (token refresh)
    # -------------------------------------------------------------------------
    gmail_client_id: Optional[str] = Field(default=None, alias="GMAIL_CLIENT_ID")
    gmail_client_secret: Optional[str] = Field(
        default=None,
        alias="GMAIL_CLIENT_SECRET",
    )

    # -------------------------------------------------------------------------
    # Automation engine
    # -------------------------------------------------------------------------
    default_timezone: str = Field(
        default="America/Mexico_City",
        alias="AUTOMATIONS_DEFAULT_TIMEZONE",
    )
    fetch_limit: int = Field(default=5000, alias="AUTOMATIONS_FETCH_LIMIT", ge=1)

    tenant_concurrency: int = Field(
        default=4,
        alias="AUTOMATIONS_TENANT_CONCURRENCY",
        ge=1,
    )
    send_concurrency: int = Field(
        default=3,
        alias="AUTOMATIONS_SEND_CONCURRENCY",
        ge=1,
    )

    db_timeout_seconds: float = Field(
        default=10.0,
        alias="AUTOMATIONS_DB_TIMEOUT_SECONDS",
        gt=0,
    )
    token_timeout_seconds: float = Field(
        default=15.0,
        alias="AUTOMATIONS_TOKEN_TIMEOUT_SECONDS",
        gt=0,
    )
    send_timeout_seconds: float = Field(
        default=20.0,
        alias="AUTOMATIONS_SEND_TIMEOUT_SECONDS",
        gt=0,
    )


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader so config is evaluated once per process.
    """
    settings = Settings()
    logger.info(
        "Settings loaded (env=%s, debug=%s, default_tz=%s)",
        settings.environment,
        settings.debug,
        settings.default_timezone,
    )
    return settings


# Singleton used everywhere else
settings: Settings = get_settings()
