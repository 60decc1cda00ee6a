from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from binpickup.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected at startup
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(field_name: str, extra: Any) -> str:
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return field_name.upper()


class Settings(BaseModel):
    """Runtime settings for the pickup API.

    Loaded once from the process environment (and ``.env``) and passed into
    the services explicitly. Token secrets are mandatory; a missing, short or
    shared secret fails validation so the process never starts half-configured.
    """

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    remember_me_refresh_ttl_days: int = env_field(
        30, "REMEMBER_ME_REFRESH_TTL_DAYS", ge=1
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    max_refresh_tokens: int = env_field(5, "MAX_REFRESH_TOKENS", ge=1)
    login_history_limit: int = env_field(10, "LOGIN_HISTORY_LIMIT", ge=1)
    auth_timeout_seconds: float = env_field(5.0, "AUTH_TIMEOUT_SECONDS", gt=0)
    auth_rate_limit_per_minute: int = env_field(
        20,
        "AUTH_RATE_LIMIT_PER_MINUTE",
        ge=0,
        description="Register/login attempts allowed per client per minute; 0 disables",
    )

    database_url: str = env_field(
        "postgresql://localhost:5432/binpickup", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    data_root: str = env_field("/srv/binpickup", "DATA_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permits reset_runtime_for_tests to rebuild the runtime singleton",
    )

    api_prefix: str = env_field("/api", "API_PREFIX")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed browser origins",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Process environment first, then ``env_file``, then field defaults."""
        file_values = dotenv_values(env_file)
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            env_name = _env_name(name, field.json_schema_extra)
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @model_validator(mode="after")
    def _validate_token_secrets(self) -> "Settings":
        access = self.access_token_secret
        refresh = self.refresh_token_secret
        if not access or not refresh:
            raise ValueError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set"
            )
        if len(access) < MIN_SECRET_LENGTH or len(refresh) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"token secrets must be at least {MIN_SECRET_LENGTH} characters"
            )
        if access == refresh:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)

    @property
    def remember_me_refresh_ttl(self) -> timedelta:
        return timedelta(days=self.remember_me_refresh_ttl_days)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            memory_store=_settings_cache.use_memory_store,
            redis_configured=_settings_cache.redis_url is not None,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
