"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Settings are grouped by concern, each with its own env prefix:
- THROTTLE_*: request budget, window and failure policy
- STORE_*: counter store connection and server tuning
- LOG_*: logging output and request correlation
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ up front.
# Tests set TESTING=true to keep a developer's local file out of the run.
if _env_file and os.getenv("TESTING", "").lower() != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


DEFAULT_BUSY_MESSAGE = "Server is busy at the moment, try again."
DEFAULT_MAX_MEMORY_BYTES = 100 * 1024 * 1024


class ThrottleSettings(BaseSettings):
    """Per-client throttling policy."""

    enabled: bool = Field(
        True,
        description="Enable request throttling middleware",
    )
    max_requests_per_interval: int = Field(
        10,
        description="Maximum number of requests accepted per client per window",
        ge=1,
    )
    interval_in_seconds: int = Field(
        1,
        description="Window length in seconds; refreshed on every accepted request",
        ge=1,
    )
    failure_policy: Literal["open", "closed"] = Field(
        "open",
        description="Outcome when the counter store fails: open accepts, closed rejects",
    )
    counting_mode: Literal["two_step", "atomic"] = Field(
        "two_step",
        description=(
            "two_step reads then writes (may over-admit under concurrency); "
            "atomic performs read-compare-increment in a single store call"
        ),
    )
    key_prefix: str = Field(
        "rethrottle:",
        description="Prefix applied to client keys in the counter store",
    )
    exempt_paths: str | None = Field(
        "/health",
        description="Comma-separated request paths that are never throttled",
    )
    busy_status_code: int = Field(
        503,
        description="HTTP status of the default rejection response",
    )
    busy_message: str = Field(
        DEFAULT_BUSY_MESSAGE,
        description="Plain-text body of the default rejection response",
    )

    model_config = SettingsConfigDict(
        env_prefix="THROTTLE_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Counter store connection configuration."""

    backend: Literal["redis", "memory"] = Field(
        "redis",
        description="Counter store backend (memory is per-process, for development)",
    )
    host: str = Field("localhost", description="Redis host")
    port: int = Field(6379, description="Redis port")
    db: int = Field(0, description="Redis logical database")
    password: str | None = Field(None, description="Redis password")
    max_memory_bytes: int = Field(
        DEFAULT_MAX_MEMORY_BYTES,
        description="Memory cap applied to the Redis server (CONFIG SET maxmemory)",
        ge=0,
    )
    eviction_policy: str = Field(
        "volatile-lru",
        description="Redis maxmemory-policy applied on connect",
    )
    disable_persistence: bool = Field(
        True,
        description="Disable RDB snapshots on the Redis server (CONFIG SET save '')",
    )
    configure_server: bool = Field(
        True,
        description="Issue CONFIG SET commands on connect (disable for managed Redis)",
    )
    socket_timeout_seconds: float = Field(
        0.5,
        description="Upper bound for a single store round-trip",
    )
    connect_timeout_seconds: float = Field(
        0.5,
        description="Upper bound for establishing the store connection",
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log line format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        None,
        description="Rotate the log file at this size (None disables rotation)",
    )
    backup_count: int = Field(5, description="Rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


def parse_exempt_paths(raw: str | None) -> frozenset[str]:
    """Parse a comma-separated list of exempt paths.

    Args:
        raw: Raw setting value, e.g. "/health,/metrics".

    Returns:
        frozenset[str]: Non-empty, whitespace-trimmed paths.
    """

    if not raw:
        return frozenset()
    return frozenset(path.strip() for path in raw.split(",") if path.strip())


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    throttle: ThrottleSettings = Field(default_factory=ThrottleSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
settings = Settings()
