from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenguard.logging import get_logger

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the revocation, lockout and session services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(None, "MEMORY_STORE_PATH")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only helpers such as runtime resets.",
    )

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_ms: int = env_field(30 * 60 * 1000, "LOCKOUT_DURATION_MS", gt=0)
    revocation_ttl_ms: int = env_field(30 * DAY_MS, "REVOCATION_TTL_MS", gt=0)
    session_lifetime_ms: int = env_field(30 * DAY_MS, "SESSION_LIFETIME_MS", gt=0)

    sweeper_high_water: int = env_field(10_000, "SWEEPER_HIGH_WATER", ge=1)
    sweeper_target_size: int = env_field(5_000, "SWEEPER_TARGET_SIZE", ge=0)
    sweeper_interval_seconds: float = env_field(3600, "SWEEPER_INTERVAL_SECONDS", gt=0)
    local_cache_max_entries: int = env_field(50_000, "LOCAL_CACHE_MAX_ENTRIES", ge=1)

    durable_timeout_seconds: float = env_field(
        5.0,
        "DURABLE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for every durable store call.",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)

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

    @field_validator("redis_url", "memory_store_path")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _check_sweeper_bounds(self) -> "Settings":
        if self.sweeper_target_size >= self.sweeper_high_water:
            raise ValueError("SWEEPER_TARGET_SIZE must be below SWEEPER_HIGH_WATER")
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            redis_enabled=_settings_cache.redis_url is not None,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
