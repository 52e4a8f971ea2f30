"""
Configuration management for the marketplace service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEY_PARTS: tuple[str, ...] = ("secret", "password", "private_key", "api_key")

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


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


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_token_path: str
    timeout_seconds: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class UploadsConfig(BaseModel):
    """Uploaded attachment storage configuration."""

    model_config = ConfigDict(extra="forbid")
    storage_path: str
    max_file_size: int
    public_prefix: str


class MessagingConfig(BaseModel):
    """Messaging configuration."""

    model_config = ConfigDict(extra="forbid")
    preview_length: int


class AuditConfig(BaseModel):
    """Audit log query configuration."""

    model_config = ConfigDict(extra="forbid")
    default_page_size: int
    max_page_size: int


class LifecycleConfig(BaseModel):
    """
    Optional per-role narrowing of the transition table.

    Maps role -> current status -> allowed next statuses. A role that is
    not listed keeps the full symmetric table.
    """

    model_config = ConfigDict(extra="forbid")
    role_transitions: dict[str, dict[str, list[str]]]


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED except the lifecycle override.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    request: RequestConfig
    uploads: UploadsConfig
    messaging: MessagingConfig
    audit: AuditConfig
    lifecycle: LifecycleConfig | None = None


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the project root."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return _PROJECT_ROOT / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML config file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS)
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
