"""
Configuration management for the settlement service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "token", "private_key")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str
    retention_days: int


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    session_path: str
    timeout_seconds: int


class NotificationsConfig(BaseModel):
    """Notification sink connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    notify_path: str
    timeout_seconds: int
    queue_size: int


class LifecycleConfig(BaseModel):
    """Assignment windows and pause bounds, all in seconds."""

    model_config = ConfigDict(extra="forbid")
    start_window_seconds: int
    execution_window_seconds: int
    pause_min_seconds: int
    pause_max_seconds: int
    pause_auto_accept_seconds: int

    @field_validator(
        "start_window_seconds",
        "execution_window_seconds",
        "pause_min_seconds",
        "pause_max_seconds",
        "pause_auto_accept_seconds",
    )
    @classmethod
    def window_must_be_positive(cls, value: int) -> int:
        """Reject zero or negative windows at startup."""
        if value <= 0:
            msg = "lifecycle windows must be positive"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def pause_bounds_must_be_ordered(self) -> LifecycleConfig:
        """Reject a minimum pause longer than the maximum."""
        if self.pause_min_seconds > self.pause_max_seconds:
            msg = "lifecycle.pause_min_seconds must not exceed pause_max_seconds"
            raise ValueError(msg)
        return self


class SchedulerConfig(BaseModel):
    """Background sweep configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    initial_delay_seconds: float
    interval_seconds: float
    batch_size: int

    @field_validator("batch_size")
    @classmethod
    def batch_size_in_range(cls, value: int) -> int:
        """Keep each sweep step bounded."""
        if value < 1 or value > 1000:
            msg = "scheduler.batch_size must be between 1 and 1000"
            raise ValueError(msg)
        return value

    @field_validator("interval_seconds")
    @classmethod
    def interval_must_be_positive(cls, value: float) -> float:
        """Reject a busy-looping scheduler."""
        if value <= 0:
            msg = "scheduler.interval_seconds must be positive"
            raise ValueError(msg)
        return value


class DisputesConfig(BaseModel):
    """Dispute configuration."""

    model_config = ConfigDict(extra="forbid")
    sla_seconds: int
    max_detail_length: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    notifications: NotificationsConfig
    lifecycle: LifecycleConfig
    scheduler: SchedulerConfig
    disputes: DisputesConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and validate settings once per process.

    Raises:
        FileNotFoundError: If the configuration file does not exist
        pydantic.ValidationError: If a key is missing, unknown or mistyped
    """
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS)
            else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
