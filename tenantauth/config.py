from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConfigurationError

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env`` file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantauth", "SHARED_FS_ROOT")
    app_env: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without Redis.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        900,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime; must be a positive integer.",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime; must be a positive integer.",
    )
    session_max_age_hours: int = env_field(24, "SESSION_MAX_AGE_HOURS")
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES")
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    password_history_count: int = env_field(5, "PASSWORD_HISTORY_COUNT")
    enforce_mfa_in_dev: bool = env_field(
        False,
        "ENFORCE_MFA_IN_DEV",
        description="Require MFA during account recovery outside production.",
    )
    mfa_issuer: str = env_field("TenantAuth", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

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

    @field_validator("app_env")
    @classmethod
    def _validate_env(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user (e.g. mounted volume)
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
        tmp_path: Optional[str] = None
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


# System-settings keys that may override env-derived values at runtime.
_OVERRIDE_KEYS = {
    "auth.access_token_ttl": "access_token_ttl_seconds",
    "auth.refresh_token_ttl": "refresh_token_ttl_seconds",
    "auth.security.max_failed_attempts": "max_failed_attempts",
    "auth.security.lock_duration_minutes": "lock_duration_minutes",
    "global_session_timeout_minutes": "idle_timeout_minutes",
    "account.password_history_count": "password_history_count",
    "security.enforce_mfa_in_dev": "enforce_mfa_in_dev",
}


def parse_positive_int(value: Any, name: str) -> int:
    """Parse ``value`` as a strictly positive integer or raise ConfigurationError."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a positive integer", detail={"setting": name})
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{name} must be a positive integer", detail={"setting": name}
        ) from None
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be a positive integer", detail={"setting": name})
    return parsed


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AuthConfig:
    """Explicit configuration handed to every auth component at construction."""

    jwt_secret: str
    jwt_issuer: str = "tenantauth"
    jwt_audience: str = "tenantauth-clients"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    session_max_age_hours: int = 24
    idle_timeout_minutes: int = 30
    max_failed_attempts: int = 5
    lock_duration_minutes: int = 30
    password_history_count: int = 5
    enforce_mfa_in_dev: bool = False
    is_production: bool = False
    mfa_issuer: str = "TenantAuth"
    reset_token_ttl_hours: int = 24
    reset_otp_ttl_minutes: int = 10
    recovery_token_ttl_hours: int = 1

    def __post_init__(self) -> None:
        if not self.jwt_secret:
            raise ConfigurationError("jwt_secret is required")
        for name in (
            "access_token_ttl_seconds",
            "refresh_token_ttl_seconds",
            "session_max_age_hours",
            "idle_timeout_minutes",
            "max_failed_attempts",
            "lock_duration_minutes",
            "password_history_count",
        ):
            parse_positive_int(getattr(self, name), name)

    @property
    def mfa_enforced(self) -> bool:
        return self.is_production or self.enforce_mfa_in_dev

    @classmethod
    def from_settings(
        cls, settings: Settings, overrides: Optional[Mapping[str, Any]] = None
    ) -> "AuthConfig":
        values: dict[str, Any] = {
            "jwt_secret": settings.jwt_secret,
            "jwt_issuer": settings.jwt_issuer,
            "jwt_audience": settings.jwt_audience,
            "access_token_ttl_seconds": settings.access_token_ttl_seconds,
            "refresh_token_ttl_seconds": settings.refresh_token_ttl_seconds,
            "session_max_age_hours": settings.session_max_age_hours,
            "idle_timeout_minutes": settings.session_idle_timeout_minutes,
            "max_failed_attempts": settings.max_failed_login_attempts,
            "lock_duration_minutes": settings.lockout_duration_minutes,
            "password_history_count": settings.password_history_count,
            "enforce_mfa_in_dev": settings.enforce_mfa_in_dev,
            "is_production": settings.is_production,
            "mfa_issuer": settings.mfa_issuer,
        }
        for key, raw in (overrides or {}).items():
            target = _OVERRIDE_KEYS.get(key)
            if not target or raw is None:
                continue
            if target == "enforce_mfa_in_dev":
                values[target] = _parse_bool(raw)
            else:
                values[target] = parse_positive_int(raw, key)
        return cls(**values)


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
