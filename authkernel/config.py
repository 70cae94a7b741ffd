from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 16


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


class Settings(BaseModel):
    """Runtime settings for the session and credential core."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_state_path: str | None = env_field(
        None,
        "MEMORY_STATE_PATH",
        description="JSON file the memory store persists to; unset keeps state in-process only",
    )

    # Signed tokens
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    # Lockout and session limits
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)
    default_max_sessions: int = env_field(5, "DEFAULT_MAX_SESSIONS", ge=1)

    # Idle reaper
    idle_session_minutes: int = env_field(8, "IDLE_SESSION_MINUTES", ge=1)
    idle_reaper_interval_seconds: int = env_field(
        60, "IDLE_REAPER_INTERVAL_SECONDS", ge=1
    )
    idle_reaper_enabled: bool = env_field(True, "IDLE_REAPER_ENABLED")

    # Hashing
    hash_timeout_seconds: float = env_field(5.0, "HASH_TIMEOUT_SECONDS", gt=0)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # MFA
    mfa_issuer: str = env_field("AuthKernel", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to the access secret",
    )
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0)

    # Passkeys
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("AuthKernel", "WEBAUTHN_RP_NAME")
    webauthn_origin: str = env_field("http://localhost:5173", "WEBAUTHN_ORIGIN")
    webauthn_challenge_ttl_seconds: int = env_field(
        300, "WEBAUTHN_CHALLENGE_TTL_SECONDS", ge=30
    )

    # Enrichment
    geolocation_enabled: bool = env_field(True, "GEOLOCATION_ENABLED")
    geo_ip_lookup_url: str = env_field(
        "http://ip-api.com/json/{ip}?fields=status,country,regionName,city",
        "GEO_IP_LOOKUP_URL",
    )
    geo_reverse_lookup_url: str = env_field(
        "https://nominatim.openstreetmap.org/reverse", "GEO_REVERSE_LOOKUP_URL"
    )
    geo_timeout_seconds: float = env_field(2.0, "GEO_TIMEOUT_SECONDS", gt=0)

    # HTTP surface
    cookie_secure: bool | None = env_field(None, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    audit_log_retention_days: int = env_field(90, "AUDIT_LOG_RETENTION_DAYS", ge=1)

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("cookie_secure", mode="before")
    @classmethod
    def _blank_cookie_secure(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"signing secrets must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            if getattr(self, name):
                continue
            if self.app_env == AppEnv.PRODUCTION:
                raise ValueError(f"{name.upper()} must be set in production")
            # Ephemeral secrets invalidate every token on restart
            logger.warning("jwt_secret_generated", setting=name.upper())
            setattr(self, name, secrets.token_urlsafe(48))
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.cookie_secure is None:
            self.cookie_secure = self.app_env == AppEnv.PRODUCTION
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION


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
