from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hostpanel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hostpanel", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/hostpanel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the memory store to SHARED_FS_ROOT/state between restarts",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("hostpanel", "JWT_ISSUER")
    jwt_audience: str = env_field("hostpanel-clients", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Validity window of issued session tokens",
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for clock skew across nodes when checking expiry",
    )
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting two-factor secrets at rest (defaults to JWT_SECRET)",
    )

    # Lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(60, "LOCKOUT_DURATION_MINUTES", ge=1)

    # Two-factor
    totp_issuer: str = env_field("Cloud Panel", "TOTP_ISSUER")
    totp_digits: int = env_field(6, "TOTP_DIGITS", ge=6, le=8)
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS", ge=1)
    totp_valid_window: int = env_field(1, "TOTP_VALID_WINDOW", ge=0, le=2)

    # Password hashing (argon2id)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_MEMORY_COST", description="argon2 memory cost in KiB", ge=8
    )
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)

    # Audit trail
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", ge=1)
    audit_prune_interval_seconds: int = env_field(
        6 * 60 * 60, "AUDIT_PRUNE_INTERVAL_SECONDS", ge=60
    )

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/hostpanel"))
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
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
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

    @field_validator("password_parallelism")
    @classmethod
    def _check_memory_cost(cls, value: int, info) -> int:
        memory_cost = info.data.get("password_memory_cost")
        if memory_cost and memory_cost < 8 * value:
            raise ValueError("password_memory_cost must be at least 8 * password_parallelism")
        return value


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
