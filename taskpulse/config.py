from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from taskpulse.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session core, scheduler and HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskpulse", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/taskpulse", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Credentials
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskpulse", "JWT_ISSUER")
    jwt_audience: str = env_field("taskpulse-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Access credential lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh credential and session row lifetime",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Background scheduler (all hours are UTC)
    scheduler_enabled: bool = env_field(
        True,
        "SCHEDULER_ENABLED",
        description="Start the periodic maintenance and notification jobs on app startup",
    )
    task_purge_hour: int = env_field(3, "TASK_PURGE_HOUR")
    session_sweep_hour: int = env_field(4, "SESSION_SWEEP_HOUR")
    soft_delete_retention_days: int = env_field(30, "SOFT_DELETE_RETENTION_DAYS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TaskPulse", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("task_purge_hour", "session_sweep_hour")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("hour must be between 0 and 23")
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_reset_ttl_minutes",
        "soft_delete_retention_days",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # shared_fs_root is declared earlier, so it is already validated here
        return _load_or_create_secret(Path(info.data.get("shared_fs_root", "/srv/taskpulse")))


_MIN_SECRET_LENGTH = 32


def _load_or_create_secret(fs_root: Path) -> str:
    """Signing secret persisted at ``fs_root/.jwt_secret`` (mode 0600).

    Reused across restarts so issued credentials survive a redeploy; a new
    one is written atomically when none is usable.
    """
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_unavailable", path=str(fs_root), error=str(exc))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            existing = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(secret_path), error=str(exc))
        else:
            if len(existing) >= _MIN_SECRET_LENGTH:
                return existing
            logger.warning("jwt_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_name = -1, None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_")
        os.fchmod(fd, 0o600)
        os.write(fd, generated.encode())
        os.close(fd)
        fd = -1
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            "cannot persist a signing secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
