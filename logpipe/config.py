"""
Logpipe - Configuration

Single source of truth for process configuration. Values come from the
environment (case-insensitive) with an optional env file named by ENV_FILE.

REQUIRED:
  BROKER_URL   - Postgres DSN of the database hosting the pgmq extension
  SINK_URL     - Postgres DSN of the database holding the `logs` table
                 (worker only; the API never talks to the sink)

Everything else has a default; the Settings fields below are the full list.

Usage:
    from logpipe.config import get_settings, validate_required_env

    validate_required_env("worker")  # exits the process if misconfigured
    settings = get_settings()
"""

from __future__ import annotations

import logging
import os
import sys
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Exit code for missing configuration
EXIT_CODE_CONFIG = 78

# Exit code when the broker or sink cannot be reached at startup
EXIT_CODE_STARTUP = 2

# Exit code when the broker or sink is lost after startup (--once runs)
EXIT_CODE_UNAVAILABLE = 69

REQUIRED_ENV_VARS: dict[str, tuple[str, ...]] = {
    "api": ("BROKER_URL",),
    "worker": ("BROKER_URL", "SINK_URL"),
}


class Settings(BaseSettings):
    """
    Unified settings for the ingress API and the persistence worker.

    Missing URLs do not fail construction; call validate_required_env()
    at process start so the failure is a clean, logged exit.
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    BROKER_URL: str = Field(default="", description="Postgres DSN hosting pgmq")
    SINK_URL: str = Field(default="", description="Postgres DSN for the logs table")

    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)
    DB_CONNECT_RETRIES: int = Field(default=5, ge=1, description="Startup connect attempts")

    # =========================================================================
    # QUEUE
    # =========================================================================

    QUEUE_NAME: str = Field(default="logs", min_length=1, max_length=43)
    PUBLISH_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)

    # =========================================================================
    # WORKER
    # =========================================================================

    WORKER_PREFETCH: int = Field(default=10, ge=1, le=1000)
    WORKER_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    WORKER_VISIBILITY_TIMEOUT: int = Field(default=30, ge=1)
    WORKER_POLL_SECONDS: int = Field(default=5, ge=1)
    WORKER_INSERT_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    WORKER_RETRY_BASE_DELAY: int = Field(default=1, ge=0)
    WORKER_RETRY_MAX_DELAY: int = Field(default=60, ge=0)
    WORKER_SHUTDOWN_TIMEOUT: float = Field(default=30.0, ge=0)
    WORKER_SINK_CHECK_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)

    # =========================================================================
    # API / HEALTH
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8080)
    HEALTH_CACHE_TTL_SECONDS: float = Field(default=5.0, ge=0)
    HEALTH_CHECK_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)

    # =========================================================================
    # LOGGING
    # =========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_JSON: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("BROKER_URL", "SINK_URL", mode="before")
    @classmethod
    def _strip_dsn(cls, v: Any) -> Any:
        # Dashboards love to paste DSNs wrapped in quotes
        if isinstance(v, str):
            return v.strip().strip("'\"")
        return v

    @model_validator(mode="after")
    def _insert_fits_in_visibility_window(self) -> "Settings":
        # A message whose insert outlives its lease is redelivered while still in flight
        if self.WORKER_INSERT_TIMEOUT_SECONDS >= self.WORKER_VISIBILITY_TIMEOUT:
            raise ValueError(
                "WORKER_INSERT_TIMEOUT_SECONDS must be shorter than WORKER_VISIBILITY_TIMEOUT "
                f"({self.WORKER_INSERT_TIMEOUT_SECONDS} >= {self.WORKER_VISIBILITY_TIMEOUT})"
            )
        return self

    # Lowercase accessors, matching how the rest of the code reads settings

    @property
    def broker_url(self) -> str:
        return self.BROKER_URL

    @property
    def sink_url(self) -> str:
        return self.SINK_URL

    @property
    def queue_name(self) -> str:
        return self.QUEUE_NAME

    @property
    def log_level(self) -> str:
        return self.LOG_LEVEL

    def missing_for(self, role: str) -> list[str]:
        """Return the required variable names that are empty for a role."""
        required = REQUIRED_ENV_VARS.get(role)
        if required is None:
            raise ValueError(f"Unknown process role: {role!r}")
        return [name for name in required if not getattr(self, name)]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


def load_settings() -> Settings:
    """get_settings() for process entry points; invalid values exit with EXIT_CODE_CONFIG."""
    try:
        return get_settings()
    except ValidationError as e:
        print(f"FATAL: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(EXIT_CODE_CONFIG) from e


def validate_required_env(role: str, settings: Settings | None = None) -> Settings:
    """
    Ensure the variables a process role needs are present.

    There is no degraded mode: a missing broker or sink URL is fatal.

    Args:
        role: "api" or "worker"
        settings: Settings to check (defaults to get_settings())

    Returns:
        The validated settings.

    Raises:
        SystemExit: With EXIT_CODE_CONFIG when anything is missing.
    """
    settings = settings or get_settings()
    missing = settings.missing_for(role)
    if missing:
        logger.critical(
            "Missing required configuration for %s: %s", role, ", ".join(missing)
        )
        print(f"FATAL: missing required environment: {', '.join(missing)}", file=sys.stderr)
        raise SystemExit(EXIT_CODE_CONFIG)
    return settings


def configure_logging(settings: Settings | None = None, service_name: str = "logpipe") -> None:
    """Configure process logging from settings."""
    from logpipe.core.logging import configure_structured_logging

    if settings is None:
        settings = get_settings()

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        service_name=service_name,
    )

    # Quiet noisy loggers
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
