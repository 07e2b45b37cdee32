"""Centralized application configuration with schema validation.

This module is intentionally compatibility-first:
- Supports flat environment names (for example ``DB_URL`` or ``BATCH_SIZE``).
- Supports nested names (for example ``QUEUE__BATCH_SIZE``).
- Optionally reads a local ``.env`` file before process env values.

Numeric worker settings must be finite and non-negative; an invalid value
raises ``ValidationError`` at startup instead of surfacing as a runtime retry.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="Postgres connection URL")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in _LOG_LEVELS:
            return text
        return "INFO"


class DbMetricsConfig(BaseModel):
    """DB query instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        if value is None:
            return True
        text = str(value).strip().lower()
        if text in {"0", "false", "no", "off"}:
            return False
        return True


class QueueConfig(BaseModel):
    """Inbox queue polling and retry settings."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    batch_size: int = Field(default=10, ge=1)
    poll_interval_seconds: float = Field(default=2.0, ge=0.0)
    error_pause_seconds: float = Field(default=10.0, ge=0.0)
    max_attempts: int = Field(default=5, ge=1)
    base_backoff_seconds: float = Field(default=2.0, ge=0.0)
    max_backoff_seconds: float = Field(default=60.0, ge=0.0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> QueueConfig:
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("queue.max_backoff_seconds must be >= queue.base_backoff_seconds")
        return self


class NormalizeConfig(BaseModel):
    """Raw-to-normalized stage settings."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    batch_size: int = Field(default=50, ge=1)
    retry_delay_seconds: float = Field(default=300.0, ge=0.0)


class IngestConfig(BaseModel):
    """Ingestion stage settings."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(default="saipos")
    source_factory: str | None = Field(default=None, description="module:attr of an OrderSource factory")

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        return text or "saipos"

    @field_validator("source_factory", mode="before")
    @classmethod
    def _normalize_factory(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class RecoveryConfig(BaseModel):
    """Stale-claim recovery settings."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    stale_after_seconds: float = Field(default=900.0, ge=0.0)
    limit: int = Field(default=500, ge=1)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    normalize: NormalizeConfig = Field(default_factory=NormalizeConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    db = {
        "url": _first_non_empty(env, "DB__URL", "DB_URL", "DATABASE_URL"),
        "pool_maxconn": _first_non_empty(env, "DB__POOL_MAXCONN", "DB_POOL_MAXCONN"),
        "connect_timeout": _first_non_empty(env, "DB__CONNECT_TIMEOUT", "DB_CONNECT_TIMEOUT"),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "SALESFLOW_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "SALESFLOW_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "SALESFLOW_LOG_OVERRIDE"
        ),
    }
    db_metrics = {
        "metrics_enabled": _first_non_empty(env, "DB_METRICS__ENABLED", "DB_QUERY_METRICS_ENABLED"),
        "slow_query_threshold_ms": _first_non_empty(
            env, "DB_METRICS__SLOW_QUERY_THRESHOLD_MS", "DB_SLOW_QUERY_THRESHOLD_MS"
        ),
    }
    queue = {
        "batch_size": _first_non_empty(env, "QUEUE__BATCH_SIZE", "BATCH_SIZE"),
        "poll_interval_seconds": _first_non_empty(
            env, "QUEUE__POLL_INTERVAL_SECONDS", "POLL_INTERVAL_SECONDS"
        ),
        "error_pause_seconds": _first_non_empty(env, "QUEUE__ERROR_PAUSE_SECONDS", "ERROR_PAUSE_SECONDS"),
        "max_attempts": _first_non_empty(env, "QUEUE__MAX_ATTEMPTS", "MAX_ATTEMPTS"),
        "base_backoff_seconds": _first_non_empty(
            env, "QUEUE__BASE_BACKOFF_SECONDS", "BASE_BACKOFF_SECONDS"
        ),
        "max_backoff_seconds": _first_non_empty(env, "QUEUE__MAX_BACKOFF_SECONDS", "MAX_BACKOFF_SECONDS"),
    }
    normalize = {
        "batch_size": _first_non_empty(env, "NORMALIZE__BATCH_SIZE", "NORMALIZE_BATCH_SIZE"),
        "retry_delay_seconds": _first_non_empty(
            env, "NORMALIZE__RETRY_DELAY_SECONDS", "NORMALIZE_RETRY_DELAY_SECONDS"
        ),
    }
    ingest = {
        "provider": _first_non_empty(env, "INGEST__PROVIDER", "PROVIDER"),
        "source_factory": _first_non_empty(env, "INGEST__SOURCE_FACTORY", "ORDER_SOURCE_FACTORY"),
    }
    recovery = {
        "stale_after_seconds": _first_non_empty(
            env, "RECOVERY__STALE_AFTER_SECONDS", "STALE_AFTER_SECONDS"
        ),
        "limit": _first_non_empty(env, "RECOVERY__LIMIT", "RECOVERY_LIMIT"),
    }
    return {
        "db": {k: v for k, v in db.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
        "db_metrics": {k: v for k, v in db_metrics.items() if v is not None},
        "queue": {k: v for k, v in queue.items() if v is not None},
        "normalize": {k: v for k, v in normalize.items() if v is not None},
        "ingest": {k: v for k, v in ingest.items() if v is not None},
        "recovery": {k: v for k, v in recovery.items() if v is not None},
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "DatabaseConfig",
    "DbMetricsConfig",
    "IngestConfig",
    "LoggingSettings",
    "NormalizeConfig",
    "QueueConfig",
    "RecoveryConfig",
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
