"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
token tracker, loading and validating environment variables at startup,
and the explicit layering used to apply a config file and CLI flags on top.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from eth_token_tracker.storage.database import is_memory_sqlite_url

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class StorageSettings(BaseSettings):
    """Storage backend settings."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore", populate_by_name=True)

    backend: Literal["postgresql", "sqlite"] = Field(
        default="postgresql",
        alias="STORAGE_BACKEND",
        description="Storage backend name (looked up in the store registry)",
    )
    url: str = Field(
        default="postgresql+asyncpg://postgres@localhost:5432/postgres",
        alias="DATABASE_URL",
        description="Database connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        if is_memory_sqlite_url(v):
            raise ValueError("DATABASE_URL must not be an in-memory SQLite database")
        return v


class TrackerSettings(BaseSettings):
    """Chain feed settings."""

    model_config = SettingsConfigDict(env_prefix="TRACKER_", extra="ignore", populate_by_name=True)

    endpoint: str = Field(
        default="https://mainnet.infura.io",
        alias="TRACKER_ENDPOINT",
        description="JSON-RPC endpoint of the chain node",
    )
    checkpoint_path: Path = Field(
        default=Path("checkpoint.json"),
        alias="TRACKER_CHECKPOINT_PATH",
        description="File the feed stores its last processed block in",
    )
    batch_size: int = Field(
        default=1000,
        alias="TRACKER_BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Blocks per eth_getLogs range",
    )
    progress_bar: bool = Field(
        default=True,
        alias="TRACKER_PROGRESS_BAR",
        description="Render sync progress on stderr (TTY only)",
    )
    start_block: int = Field(
        default=0,
        alias="TRACKER_START_BLOCK",
        ge=0,
        description="First block to scan when no checkpoint exists",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        alias="TRACKER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Delay between head polls once synced",
    )
    reorg_window: int = Field(
        default=64,
        alias="TRACKER_REORG_WINDOW",
        ge=1,
        le=10_000,
        description="Recent blocks kept in memory for reorg detection",
    )

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC endpoint must be an HTTP(S) URL")
        return v


class HTTPSettings(BaseSettings):
    """HTTP query API settings."""

    model_config = SettingsConfigDict(env_prefix="HTTP_", extra="ignore", populate_by_name=True)

    addr: str = Field(
        default="127.0.0.1:5000",
        alias="HTTP_ADDR",
        description="host:port the query API binds to",
    )

    @field_validator("addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError("HTTP_ADDR must be host:port")
        return v

    @property
    def host(self) -> str:
        return self.addr.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.addr.rpartition(":")[2])


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from eth_token_tracker.config import get_settings

        settings = get_settings()
        print(settings.storage.url)
        print(settings.tracker.batch_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
        populate_by_name=True,
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    tracker: TrackerSettings = Field(
        default_factory=lambda: TrackerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    http: HTTPSettings = Field(
        default_factory=lambda: HTTPSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    storage: StorageSettings = Field(
        default_factory=lambda: StorageSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    queue_size: int = Field(
        default=1024,
        alias="QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Capacity of the block event queue between feed and consumer",
    )
    shutdown_timeout_seconds: float = Field(
        default=10.0,
        alias="SHUTDOWN_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Upper bound for graceful shutdown",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "storage": {
                "backend": self.storage.backend,
                "url": self._redact_url(self.storage.url),
            },
            "tracker": {
                "endpoint": self._redact_url(self.tracker.endpoint),
                "checkpoint_path": str(self.tracker.checkpoint_path),
                "batch_size": str(self.tracker.batch_size),
                "progress_bar": str(self.tracker.progress_bar),
            },
            "http_addr": self.http.addr,
            "log_level": self.log_level,
            "queue_size": str(self.queue_size),
            "shutdown_timeout_seconds": str(self.shutdown_timeout_seconds),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


def _merge_mapping(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _merge_mapping(current, value)
        else:
            merged[key] = value
    return merged


def merge_layers(base: Settings, *overrides: Mapping[str, Any]) -> Settings:
    """Apply override layers on top of ``base`` and re-validate.

    Layers are nested mappings keyed by field name (``{"tracker": {"batch_size": 10}}``)
    and are applied left to right, so later layers win. ``None`` values are
    skipped, which lets unset CLI flags fall through. Neither ``base`` nor the
    layers are modified.

    Raises:
        ValidationError: If the merged values are invalid.
    """
    merged = base.model_dump()
    for layer in overrides:
        merged = _merge_mapping(merged, layer)
    return Settings.model_validate(merged)


def load_config_file(path: Path) -> dict[str, Any]:
    """Read a TOML config file into a layer for :func:`merge_layers`.

    Raises:
        FileNotFoundError: If the file does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with path.open("rb") as fh:
        return tomllib.load(fh)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
