from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from procauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/procauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/procauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("procauth", "JWT_ISSUER")
    jwt_audience: str = env_field("procauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    session_ttl_hours: int = env_field(
        24, "SESSION_TTL_HOURS", description="Session and refresh token lifetime"
    )
    remember_me_ttl_days: int = env_field(
        30, "REMEMBER_ME_TTL_DAYS", description="Session lifetime when rememberMe is set"
    )

    # Lockout and password policy
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", description="Argon2id memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # MFA
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting MFA secrets at rest; falls back to JWT_SECRET",
    )
    mfa_issuer: str = env_field("ProcAuth", "MFA_ISSUER")
    mfa_setup_token_ttl_minutes: int = env_field(15, "MFA_SETUP_TOKEN_TTL_MINUTES")
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    totp_window_steps: int = env_field(1, "TOTP_WINDOW_STEPS")

    # Anomaly detection
    anomaly_window_days: int = env_field(7, "ANOMALY_WINDOW_DAYS")
    anomaly_typical_hours: int = env_field(8, "ANOMALY_TYPICAL_HOURS")
    business_hours_start: int = env_field(8, "BUSINESS_HOURS_START")
    business_hours_end: int = env_field(18, "BUSINESS_HOURS_END")
    high_volume_threshold: int = env_field(100, "HIGH_VOLUME_THRESHOLD")
    login_attempt_retention_days: int = env_field(30, "LOGIN_ATTEMPT_RETENTION_DAYS")

    # Background work and storage
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")
    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS")
    event_queue_size: int = env_field(10000, "EVENT_QUEUE_SIZE")

    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ProcAuth", "EMAIL_FROM_NAME")

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

    @field_validator(
        "max_login_attempts",
        "password_min_length",
        "mfa_backup_code_count",
        "argon2_time_cost",
        "argon2_parallelism",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("business_hours_start", "business_hours_end")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("hour must be between 0 and 23")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/procauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        import tempfile

        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
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
