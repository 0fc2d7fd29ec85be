from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from habla.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments; only development exposes internal error detail."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tutoring API."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/habla", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_pool_timeout: float = env_field(
        60.0,
        "DB_POOL_TIMEOUT",
        description="Seconds to wait for a pooled connection before failing",
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate-limit store; in-process counters are used when unset",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("habla", "JWT_ISSUER")
    jwt_audience: str = env_field("habla-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(7 * 24 * 60, "TOKEN_TTL_MINUTES")

    n8n_webhook_url: str | None = env_field(None, "N8N_WEBHOOK_URL")
    n8n_api_key: str | None = env_field(None, "N8N_API_KEY")

    cors_allow_origins: List[str] = env_field(
        ["http://localhost:3000"], "CORS_ORIGIN"
    )

    # Global limiter across /api routes, per client address
    rate_limit_window_minutes: int = env_field(15, "RATE_LIMIT_WINDOW")
    rate_limit_max: int = env_field(100, "RATE_LIMIT_MAX")
    # Brute-force guards on the credential endpoints
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    auth_rate_limit_window_minutes: int = env_field(15, "AUTH_RATE_LIMIT_WINDOW")
    rate_limit_max_keys: int = env_field(10000, "RATE_LIMIT_MAX_KEYS")
    rate_limit_sweep_seconds: int = env_field(60, "RATE_LIMIT_SWEEP_SECONDS")

    audit_queue_size: int = env_field(1000, "AUDIT_QUEUE_SIZE")

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

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "n8n_webhook_url", "n8n_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


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
