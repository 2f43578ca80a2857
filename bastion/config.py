from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bastion.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and authorization core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_redis: bool = env_field(
        False,
        "USE_REDIS",
        description="Back rate-guard counters and session activity with Redis",
    )
    shared_fs_root: str = env_field("/srv/bastion", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; skips on-disk state persistence",
    )

    # Tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Separate key for refresh tokens; derived from JWT_SECRET when unset",
    )
    jwt_retired_secrets: str = env_field(
        "",
        "JWT_RETIRED_SECRETS",
        description="Comma separated verify-only keys kept during a rotation window",
    )
    jwt_issuer: str = env_field("bastion", "JWT_ISSUER")
    jwt_audience: str = env_field("bastion-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")

    # MFA
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_issuer: str = env_field("Bastion", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting pending MFA secrets at rest",
    )

    # Rate guard policies
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS")
    account_lockout_minutes: int = env_field(15, "ACCOUNT_LOCKOUT_MINUTES")
    sensitive_max_attempts: int = env_field(3, "SENSITIVE_MAX_ATTEMPTS")
    sensitive_window_seconds: int = env_field(15 * 60, "SENSITIVE_WINDOW_SECONDS")
    general_max_requests: int = env_field(100, "GENERAL_MAX_REQUESTS")
    general_window_seconds: int = env_field(15 * 60, "GENERAL_WINDOW_SECONDS")

    role_config_path: str | None = env_field(
        None,
        "ROLE_CONFIG_PATH",
        description="JSON role configuration document loaded at startup instead of the built-in catalog",
    )
    audit_buffer_size: int = env_field(10_000, "AUDIT_BUFFER_SIZE")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated origins; local dev hosts when empty",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
        "login_max_attempts",
        "login_window_seconds",
        "sensitive_max_attempts",
        "sensitive_window_seconds",
        "general_max_requests",
        "general_window_seconds",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/bastion"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
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
        tmp_path = None
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

    def retired_secrets(self) -> list[str]:
        return [item.strip() for item in self.jwt_retired_secrets.split(",") if item.strip()]

    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.cors_allow_origins.split(",") if item.strip()]


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
