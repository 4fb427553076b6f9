from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from intelgate.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where fixed-window counters live."""

    STORE = "store"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the security gate service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/intelgate", "DATABASE_URL"
    )
    redis_url: str = env_field("", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/intelgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: no state file, no background sweep.",
    )
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.STORE,
        "RATE_LIMIT_BACKEND",
        description="'store' keeps counters with sessions; 'redis' shares them across processes",
    )
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    session_inactivity_timeout_minutes: int | None = env_field(
        30,
        "SESSION_INACTIVITY_TIMEOUT_MINUTES",
        description="Validation rejects sessions idle for longer than this; blank disables the check",
    )
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    operations_file: str | None = env_field(
        None,
        "OPERATIONS_FILE",
        description="JSON file overriding per-operation role tiers and rate limits",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("rate_limit_backend", mode="before")
    @classmethod
    def _validate_rate_limit_backend(cls, value: Any) -> RateLimitBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return RateLimitBackend(value)

    @field_validator("session_inactivity_timeout_minutes", mode="before")
    @classmethod
    def _blank_timeout_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_inactivity_timeout_minutes")
    @classmethod
    def _validate_timeout(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("SESSION_INACTIVITY_TIMEOUT_MINUTES must be at least 1")
        return value

    @field_validator("operations_file", mode="before")
    @classmethod
    def _blank_operations_file_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        # Comma-separated in the environment
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
