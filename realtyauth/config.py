from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from realtyauth.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/realestate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("RealEstateAPI", "JWT_ISSUER")
    jwt_audience: str = env_field("RealEstateClients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        gt=0,
        description="Refresh token lifetime in days for remember-me sessions",
    )
    session_refresh_hours: int = env_field(
        24,
        "SESSION_REFRESH_HOURS",
        gt=0,
        description="Refresh token lifetime in hours when remember-me is off",
    )
    max_failed_login_attempts: int = env_field(
        5,
        "MAX_FAILED_LOGIN_ATTEMPTS",
        ge=0,
        description="Failed passwords before the account is locked; 0 disables lockout",
    )
    lockout_minutes: int = env_field(
        15,
        "LOCKOUT_MINUTES",
        gt=0,
        description="How long a locked account rejects logins",
    )
    cors_allow_origins: List[str] = env_field(
        ["http://localhost:3000", "http://127.0.0.1:3000"],
        "CORS_ALLOW_ORIGINS",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET is required")
        if len(value) < _MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
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
