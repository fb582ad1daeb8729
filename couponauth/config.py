from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from couponauth.logging import get_logger

logger = get_logger(__name__)

# Signing keys shorter than this are rejected by the token codec as well
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/couponauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    account_seed_path: str | None = env_field(
        None,
        "ACCOUNT_SEED_PATH",
        description="JSON file of company/customer accounts loaded into the in-memory account store",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("couponauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        24 * 60, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token lifetime in minutes"
    )
    registry_cleanup_interval_seconds: int = env_field(
        300,
        "REGISTRY_CLEANUP_INTERVAL_SECONDS",
        description="How often the background task purges expired refresh tokens",
    )

    # Lockout
    lockout_max_attempts: int = env_field(
        5, "LOCKOUT_MAX_ATTEMPTS", description="Consecutive failures before an account locks"
    )
    lockout_duration_minutes: int = env_field(
        30, "LOCKOUT_DURATION_MINUTES", description="How long a locked account stays locked"
    )
    lockout_admin_enabled: bool = env_field(
        True,
        "LOCKOUT_ADMIN_ENABLED",
        description="Apply failed-login lockout to the administrator identity",
    )

    # Rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_auth_requests: int = env_field(
        5, "RATE_LIMIT_AUTH_REQUESTS", description="Bucket capacity for /auth endpoints"
    )
    rate_limit_general_requests: int = env_field(
        100, "RATE_LIMIT_GENERAL_REQUESTS", description="Bucket capacity for other endpoints"
    )
    rate_limit_window_seconds: int = env_field(
        60, "RATE_LIMIT_WINDOW_SECONDS", description="Time to refill an empty bucket"
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Resolve client address from X-Forwarded-For; enable only behind a proxy that overwrites it",
    )

    # Administrator identity
    admin_email: str = env_field("admin@admin.com", "ADMIN_EMAIL")
    admin_password_hash: str | None = env_field(
        None,
        "ADMIN_PASSWORD_HASH",
        description="argon2 hash of the administrator password; admin login is disabled when unset",
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
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
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "registry_cleanup_interval_seconds",
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "rate_limit_auth_requests",
        "rate_limit_general_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _warn_on_loose_auth_budget(self) -> "Settings":
        if self.rate_limit_auth_requests > self.rate_limit_general_requests:
            logger.warning(
                "rate_limit_auth_budget_exceeds_general",
                auth_requests=self.rate_limit_auth_requests,
                general_requests=self.rate_limit_general_requests,
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            return str(value)
        # Persist a generated secret so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/couponauth"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
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
