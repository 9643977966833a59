from __future__ import annotations

import ipaddress
import os
import secrets
from dataclasses import dataclass, field
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignupOtpPolicy:
    """Limits applied to the email OTP sent during signup."""

    length: int = 6
    expiry_seconds: int = 300
    cooldown_seconds: int = 60
    max_failed_attempts: int = 5
    failed_attempts_window_seconds: int = 15 * 60
    max_resend_count: int = 5
    resend_window_seconds: int = 60 * 60
    session_expiry_seconds: int = 30 * 60
    session_token_bytes: int = 32


@dataclass(frozen=True)
class LoginOtpPolicy:
    length: int = 6
    expiry_seconds: int = 300
    cooldown_seconds: int = 60
    max_failed_attempts: int = 5
    failed_attempts_window_seconds: int = 15 * 60
    max_resend_count: int = 3
    # resend counter lives exactly as long as the OTP it guards
    resend_window_seconds: int = 300


@dataclass(frozen=True)
class MagicLinkPolicy:
    token_length: int = 64
    expiry_seconds: int = 15 * 60
    cooldown_seconds: int = 60


@dataclass(frozen=True)
class LockoutPolicy:
    """Progressive lockout after repeated wrong passwords.

    The first ``free_attempts`` failures cost nothing; after that each
    failure locks the account for the duration in ``durations`` keyed by the
    failure count, capped at ``max_lockout_seconds``.
    """

    free_attempts: int = 4
    durations: dict[int, int] = field(
        default_factory=lambda: {5: 30, 6: 60, 7: 120, 8: 240, 9: 480, 10: 1800}
    )
    max_lockout_seconds: int = 30 * 60
    reset_window_seconds: int = 30 * 60


@dataclass(frozen=True)
class UnlockPolicy:
    cooldown_seconds: int = 60
    max_requests: int = 3
    request_window_seconds: int = 60 * 60
    temp_password_length: int = 16
    temp_password_min_length: int = 12
    temp_password_expiry_seconds: int = 15 * 60


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_TOKEN_SECRET_FIELDS = ("access_token_secret", "refresh_token_secret", "id_token_secret")


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    mongo_url: str = env_field("mongodb://localhost:27017", "MONGO_URL")
    mongo_database: str = env_field("authflow", "MONGO_DATABASE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated token secrets and other deterministic testing behaviors.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    default_language: str = env_field("en", "DEFAULT_LANGUAGE")

    # Token settings, one secret per token kind
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    id_token_secret: str | None = env_field(None, "ID_TOKEN_SECRET")
    jwt_issuer: str = env_field("authflow", "JWT_ISSUER")
    jwt_audience: str = env_field("authflow-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS")
    id_token_ttl_seconds: int = env_field(15 * 60, "ID_TOKEN_TTL_SECONDS")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Proxy addresses or CIDR ranges whose X-Forwarded-For header is honored.",
    )

    # argon2 cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    otp_hash_time_cost: int = env_field(1, "OTP_HASH_TIME_COST")
    hash_memory_cost_kib: int = env_field(64 * 1024, "HASH_MEMORY_COST_KIB")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authflow", "EMAIL_FROM_NAME")

    # GeoLite2 City database for login history; lookups resolve to unknown without it
    geoip_database_path: str | None = env_field(None, "GEOIP_DATABASE_PATH")

    # Per-IP request limits enforced at the HTTP boundary
    login_rate_limit: int = env_field(30, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(5, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(15 * 60, "SIGNUP_RATE_WINDOW_SECONDS")
    passwordless_rate_limit: int = env_field(10, "PASSWORDLESS_RATE_LIMIT")
    passwordless_rate_window_seconds: int = env_field(
        15 * 60, "PASSWORDLESS_RATE_WINDOW_SECONDS"
    )
    check_email_rate_limit: int = env_field(10, "CHECK_EMAIL_RATE_LIMIT")
    check_email_rate_window_seconds: int = env_field(60, "CHECK_EMAIL_RATE_WINDOW_SECONDS")

    signup_otp: SignupOtpPolicy = Field(default_factory=SignupOtpPolicy)
    login_otp: LoginOtpPolicy = Field(default_factory=LoginOtpPolicy)
    magic_link: MagicLinkPolicy = Field(default_factory=MagicLinkPolicy)
    lockout: LockoutPolicy = Field(default_factory=LockoutPolicy)
    unlock: UnlockPolicy = Field(default_factory=UnlockPolicy)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            if not env_key:
                continue
            if env_key in os.environ:
                merged[name] = os.environ[env_key]
            elif env_key in env_file_values:
                merged[name] = env_file_values[env_key]
        return cls(**merged)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_proxies(cls, value: list[str]) -> list[str]:
        for entry in value:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid trusted proxy: {entry}") from exc
        return value

    @field_validator("default_language")
    @classmethod
    def _normalize_language(cls, value: str) -> str:
        return (value or "en").strip().lower()[:2] or "en"

    @field_validator("password_hash_time_cost")
    @classmethod
    def _validate_password_cost(cls, value: int) -> int:
        if value < 1:
            raise ValueError("password_hash_time_cost must be at least 1")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        for name in _TOKEN_SECRET_FIELDS:
            if getattr(self, name):
                continue
            if not self.test_mode:
                raise ValueError(
                    f"{name.upper()} must be set; generated secrets are only allowed in TEST_MODE"
                )
            logger.warning("token_secret_generated", setting=name)
            setattr(self, name, secrets.token_urlsafe(48))
        values = [getattr(self, name) for name in _TOKEN_SECRET_FIELDS]
        if len(set(values)) != len(values):
            raise ValueError("access, refresh and id token secrets must be distinct")
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
