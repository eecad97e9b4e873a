from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gemvault.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/gemvault"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    The secret is written atomically so restarts keep issued tokens valid.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field("postgresql://localhost:5432/gemvault", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        False,
        "MEMORY_STORE_PERSIST",
        description="Snapshot the in-memory store to SHARED_FS_ROOT/state after each commit",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    enable_mfa: bool = env_field(True, "ENABLE_MFA")

    # Token signing
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gemvault", "JWT_ISSUER")
    jwt_audience: str = env_field("gemvault-clients", "JWT_AUDIENCE")
    access_token_expiry: str = env_field("15m", "JWT_ACCESS_EXPIRY")
    refresh_token_expiry: str = env_field("7d", "JWT_REFRESH_EXPIRY")
    jwt_clock_skew_seconds: int = env_field(120, "JWT_CLOCK_SKEW_SECONDS")
    mfa_encryption_key: str = env_field(None, "MFA_ENCRYPTION_KEY", validate_default=True)

    # Verification tokens
    email_verification_ttl_hours: int = env_field(72, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    two_factor_ttl_minutes: int = env_field(10, "TWO_FACTOR_TTL_MINUTES")
    verification_rate_limit_max: int = env_field(3, "VERIFICATION_RATE_LIMIT_MAX")
    verification_rate_limit_window_minutes: int = env_field(
        30, "VERIFICATION_RATE_LIMIT_WINDOW_MINUTES"
    )
    token_cleanup_interval_seconds: int = env_field(3600, "TOKEN_CLEANUP_INTERVAL_SECONDS")

    # Roles and MFA
    default_role: str = env_field("customer", "DEFAULT_ROLE")
    mfa_issuer: str = env_field("Gemstone Marketplace", "MFA_ISSUER")
    mfa_pending_ttl_seconds: int = env_field(600, "MFA_PENDING_TTL_SECONDS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")

    # HTTP rate limits (per email / account, per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    # Admin account listing
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

    # Email dispatch
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout_seconds: int = env_field(30, "SMTP_TIMEOUT_SECONDS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("GemVault", "EMAIL_FROM_NAME")
    email_dispatch_timeout_seconds: float = env_field(45.0, "EMAIL_DISPATCH_TIMEOUT_SECONDS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_refresh_secret")

    @field_validator("mfa_encryption_key", mode="before")
    @classmethod
    def _ensure_mfa_key(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".mfa_encryption_key")

    @model_validator(mode="after")
    def _secrets_must_differ(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
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
