from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flamingo.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/flamingo", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; allows running without Redis.",
    )

    # Tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_access_expires_in: str = env_field(
        "1h",
        "JWT_ACCESS_EXPIRES_IN",
        description="Access token lifetime as a duration string (7d, 1h, 30m, 45)",
    )
    jwt_refresh_expires_in: str = env_field(
        "7d",
        "JWT_REFRESH_EXPIRES_IN",
        description="Refresh token lifetime as a duration string",
    )
    max_sessions: int = env_field(
        3, "MAX_SESSIONS", ge=1, description="Concurrent refresh sessions per user"
    )

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )

    # Rate limits
    global_rate_limit: int = env_field(200, "GLOBAL_RATE_LIMIT")
    global_rate_window_seconds: int = env_field(15 * 60, "GLOBAL_RATE_WINDOW_SECONDS")
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_window_seconds: int = env_field(15 * 60, "AUTH_RATE_WINDOW_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Flamingo", "EMAIL_FROM_NAME")
    client_url: str = env_field(
        "http://localhost:3000",
        "CLIENT_URL",
        description="Frontend base URL used in verification links",
    )

    # Google sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or not str(value).strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set; refusing to sign tokens with a default key")
        return str(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)


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
