from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from otpgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP authentication service."""

    app_name: str = env_field(
        "otpgate", "APP_NAME", description="Shown in the OTP email subject"
    )
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("otpgate", "JWT_ISSUER")
    jwt_audience: str = env_field("otpgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL for non-elevated roles",
    )
    elevated_refresh_token_ttl_minutes: int = env_field(
        60,
        "ELEVATED_REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL for ADMIN and SUPERADMIN",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_length: int = env_field(6, "OTP_LENGTH")
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USERNAME")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit SSL otherwise"
    )
    email_from_address: str | None = env_field(None, "SMTP_FROM_EMAIL")
    email_from_name: str | None = env_field(None, "SMTP_FROM_NAME")
    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/otpgate", "DATABASE_URL"
    )
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON snapshot; unset keeps it in-process only",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "elevated_refresh_token_ttl_minutes",
        "otp_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL must be a positive number of minutes")
        return value

    @field_validator("token_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token leeway cannot be negative")
        return value

    @field_validator("otp_length")
    @classmethod
    def _otp_length_bounds(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Ephemeral secrets: tokens do not survive a restart
            logger.warning("jwt_secrets_generated", reason="test_mode")
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
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
