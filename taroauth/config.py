from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taroauth.logging import get_logger

logger = get_logger(__name__)

WX_CODE2SESSION_URL = "https://api.weixin.qq.com/sns/jscode2session"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taroauth", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(
        4,
        "DB_POOL_MAX_SIZE",
        description="Connections in the durable store pool; 1 serializes every query",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    cache_prefix: str = env_field("rocket_taro", "CACHE_PREFIX")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; permits running without Redis",
    )

    # Sessions and cookies
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")
    cookie_ttl_hours: int = env_field(
        8,
        "SESSION_COOKIE_TTL_HOURS",
        description="Client-side cookie lifetime; independent of the server-side session TTL",
    )
    cookie_secure: bool = env_field(False, "SESSION_COOKIE_SECURE")
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Period of the expired-session sweep task; 0 disables it",
    )
    trust_proxy_headers: bool = env_field(True, "TRUST_PROXY_HEADERS")

    # Brute-force lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_failure_window_seconds: int = env_field(15 * 60, "LOGIN_FAILURE_WINDOW_SECONDS")

    # Federated (WeChat mini-program) login
    wx_app_id: str | None = env_field(None, "WX_APP_ID")
    wx_app_secret: str | None = env_field(None, "WX_APP_SECRET")
    wx_code2session_url: str = env_field(WX_CODE2SESSION_URL, "WX_CODE2SESSION_URL")
    wx_exchange_timeout_seconds: float = env_field(10.0, "WX_EXCHANGE_TIMEOUT_SECONDS")

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

    @field_validator("db_pool_min_size", "db_pool_max_size", "max_login_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("cache_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        value = value.strip().rstrip(":")
        if not value:
            raise ValueError("cache prefix cannot be empty")
        return value

    @property
    def wx_configured(self) -> bool:
        return bool(self.wx_app_id and self.wx_app_secret)


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
