from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from commerce_auth.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the signature
MIN_JWT_SECRET_LENGTH = 32
MIN_SALT_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication subsystem."""

    database_url: str = env_field(
        "postgresql://localhost:5432/commerce", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_root: str | None = env_field(
        None,
        "STATE_ROOT",
        description="Directory for the memory store JSON snapshot; unset keeps state in RAM only",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("ECommerceAPI", "JWT_ISSUER")
    jwt_audience: str = env_field("ECommerceAPI", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30, "ACCESS_TOKEN_TTL_MINUTES", gt=0, description="Access token TTL in minutes"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", gt=0, description="Refresh token TTL in days"
    )
    # argon2id cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost_kib: int = env_field(65536, "PASSWORD_MEMORY_COST_KIB", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    password_salt_bytes: int = env_field(MIN_SALT_BYTES, "PASSWORD_SALT_BYTES")

    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_issuer", "jwt_audience")
    @classmethod
    def _ensure_identity(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("issuer and audience must be non-empty")
        return value

    @field_validator("password_salt_bytes")
    @classmethod
    def _ensure_salt_size(cls, value: int) -> int:
        if value < MIN_SALT_BYTES:
            raise ValueError(f"password salt must be at least {MIN_SALT_BYTES} bytes")
        return value

    @model_validator(mode="after")
    def _ensure_refresh_outlives_access(self) -> "Settings":
        if self.refresh_token_ttl <= self.access_token_ttl:
            raise ValueError("refresh token TTL must exceed access token TTL")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            jwt_issuer=_settings_cache.jwt_issuer,
            access_token_ttl_minutes=_settings_cache.access_token_ttl_minutes,
            refresh_token_ttl_days=_settings_cache.refresh_token_ttl_days,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
