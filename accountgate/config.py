from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountgate.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account service.

    Every field maps to an environment variable (see ``env_field``); values in a
    local ``.env`` file are used when the process environment does not set them.
    """

    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Shared TTL store for pending registrations, challenges, revocations and CSRF tokens",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )
    shared_fs_root: str = env_field("/srv/accountgate", "SHARED_FS_ROOT")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("accountgate", "JWT_ISSUER")
    jwt_audience: str = env_field("accountgate-clients", "JWT_AUDIENCE")
    # Access lifetimes differ per actor kind and are kept as separate knobs.
    user_access_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "USER_ACCESS_TOKEN_TTL_MINUTES"
    )
    vendor_access_token_ttl_minutes: int = env_field(
        24 * 60, "VENDOR_ACCESS_TOKEN_TTL_MINUTES"
    )
    admin_access_token_ttl_minutes: int = env_field(
        24 * 60, "ADMIN_ACCESS_TOKEN_TTL_MINUTES"
    )
    refresh_token_ttl_minutes: int = env_field(
        14 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_expiry_buffer_seconds: int = env_field(
        30,
        "TOKEN_EXPIRY_BUFFER_SECONDS",
        description="Tokens are rejected this many seconds before their stated expiry",
    )
    csrf_token_ttl_seconds: int = env_field(24 * 60 * 60, "CSRF_TOKEN_TTL_SECONDS")

    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    pending_registration_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "PENDING_REGISTRATION_TTL_SECONDS",
        description="Upper bound on how long an unverified registration is retained",
    )

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    allow_admin_signup: bool = env_field(
        False,
        "ALLOW_ADMIN_SIGNUP",
        description="Permit self-service admin registration; admins are otherwise provisioned",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AccountGate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(10, "OTP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

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

    def access_token_ttl_minutes(self, role: str) -> int:
        ttl = {
            "user": self.user_access_token_ttl_minutes,
            "vendor": self.vendor_access_token_ttl_minutes,
            "admin": self.admin_access_token_ttl_minutes,
        }.get(getattr(role, "value", role))
        if ttl is None:
            raise ValueError(f"unknown role: {role}")
        return ttl

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "user_access_token_ttl_minutes",
        "vendor_access_token_ttl_minutes",
        "admin_access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_ttl_seconds",
        "pending_registration_ttl_seconds",
        "csrf_token_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/accountgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
