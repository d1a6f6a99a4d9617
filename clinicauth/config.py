from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinicauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and lockout core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/clinic", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_root: str | None = env_field(
        None,
        "AUTH_STATE_ROOT",
        description="Directory for memory store snapshots; unset keeps state in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Store access
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single store call (pool checkout, statement, lock wait)",
    )
    store_pool_min_size: int = env_field(1, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

    # Brute-force protection
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    backoff_base_seconds: float = env_field(2.0, "BACKOFF_BASE_SECONDS")
    backoff_max_seconds: float = env_field(60.0, "BACKOFF_MAX_SECONDS")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime when the user did not ask to be remembered",
    )
    remember_me_refresh_ttl_days: int = env_field(30, "REMEMBER_ME_REFRESH_TTL_DAYS")

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

    @field_validator(
        "store_timeout_seconds",
        "store_pool_min_size",
        "store_pool_max_size",
        "max_failed_attempts",
        "lockout_minutes",
        "backoff_base_seconds",
        "backoff_max_seconds",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "remember_me_refresh_ttl_days",
    )
    @classmethod
    def _ensure_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("state_root")
    @classmethod
    def _blank_state_root(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    def refresh_token_ttl(self, remember_me: bool = False) -> timedelta:
        if remember_me:
            return timedelta(days=self.remember_me_refresh_ttl_days)
        return timedelta(minutes=self.refresh_token_ttl_minutes)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
