from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment flavour; controls cookie security and error detail exposure."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"


class DispatchBackend(str, Enum):
    """Dispatch channel implementations available to the runtime."""

    REDIS = "redis"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: ephemeral secrets and in-memory fallbacks.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_jwt_secret: str | None = env_field(None, "REFRESH_JWT_SECRET")
    verification_secret: str | None = env_field(
        None,
        "VERIFICATION_SECRET",
        description="Signing secret for verification tokens; defaults to JWT_SECRET",
    )
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    verification_ttl_seconds: int = env_field(
        24 * 60 * 60, "VERIFICATION_TTL_SECONDS", gt=0
    )

    # Login throttling
    login_rate_limit_max_attempts: int = env_field(
        5, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS", gt=0
    )
    login_rate_limit_window_seconds: int = env_field(
        10 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow logins when the rate limit counter store is unreachable",
    )
    password_check_timeout_seconds: float = env_field(
        5.0, "PASSWORD_CHECK_TIMEOUT_SECONDS", gt=0
    )

    # Verification email dispatch
    dispatch_backend: DispatchBackend = env_field(
        DispatchBackend.REDIS, "DISPATCH_BACKEND"
    )
    dispatch_queue_name: str = env_field("email_verification", "DISPATCH_QUEUE_NAME")
    dispatch_max_attempts: int = env_field(5, "DISPATCH_MAX_ATTEMPTS", gt=0)
    dispatch_retry_backoff_seconds: float = env_field(
        2.0, "DISPATCH_RETRY_BACKOFF_SECONDS", ge=0
    )
    dispatch_delivery_timeout_seconds: float = env_field(
        60.0, "DISPATCH_DELIVERY_TIMEOUT_SECONDS", gt=0
    )
    dispatch_poll_timeout_seconds: float = env_field(
        5.0, "DISPATCH_POLL_TIMEOUT_SECONDS", gt=0
    )
    dispatch_consumer_enabled: bool = env_field(
        False,
        "DISPATCH_CONSUMER_ENABLED",
        description="Run the verification email consumer inside the API process",
    )

    # Email transport
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @property
    def cookie_secure(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "refresh_jwt_secret", "verification_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        missing = [
            env
            for env, value in (
                ("JWT_SECRET", self.jwt_secret),
                ("REFRESH_JWT_SECRET", self.refresh_jwt_secret),
            )
            if not value
        ]
        if missing:
            if not self.test_mode:
                raise ValueError(f"missing required signing secrets: {', '.join(missing)}")
            # Ephemeral secrets are only acceptable for throwaway test processes
            logger.warning("signing_secrets_generated", missing=missing)
            if not self.jwt_secret:
                self.jwt_secret = secrets.token_urlsafe(48)
            if not self.refresh_jwt_secret:
                self.refresh_jwt_secret = secrets.token_urlsafe(48)
        if self.jwt_secret == self.refresh_jwt_secret:
            raise ValueError("REFRESH_JWT_SECRET must differ from JWT_SECRET")
        if not self.verification_secret:
            self.verification_secret = self.jwt_secret
        return self


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
