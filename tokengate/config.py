from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokengate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokengate", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(25, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_max_idle_seconds: float = env_field(
        60.0,
        "DB_POOL_MAX_IDLE_SECONDS",
        description="Idle connections above min size are closed after this long",
    )
    db_pool_max_lifetime_seconds: float = env_field(
        300.0,
        "DB_POOL_MAX_LIFETIME_SECONDS",
        description="Connections are recycled after this long",
    )
    db_pool_timeout_seconds: float = env_field(10.0, "DB_POOL_TIMEOUT_SECONDS")
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS", ge=0)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    state_dir: str = env_field("/var/lib/tokengate", "STATE_DIR")

    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        ge=0,
        description="Tolerance for issued-at timestamps slightly in the future",
    )
    admin_token_ttl_hours: int = env_field(7 * 24, "ADMIN_TOKEN_TTL_HOURS", ge=1)
    login_token_ttl_seconds: int = env_field(600, "LOGIN_TOKEN_TTL_SECONDS", ge=1)
    login_token_max_active: int = env_field(3, "LOGIN_TOKEN_MAX_ACTIVE", ge=1)
    login_token_min_interval_seconds: int = env_field(
        60, "LOGIN_TOKEN_MIN_INTERVAL_SECONDS", ge=0
    )
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS", ge=1)
    session_grace_days: int = env_field(3, "SESSION_GRACE_DAYS", ge=0)
    id_generation_attempts: int = env_field(20, "ID_GENERATION_ATTEMPTS", ge=1)
    require_client_fingerprint: bool = env_field(
        False,
        "REQUIRE_CLIENT_FINGERPRINT",
        description="Reject login requests and sessions without IP and device label",
    )

    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Fernet key protecting the stored SMTP password",
    )
    # Email service settings (env vars are fallbacks for the stored email settings)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokengate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("TOKEN_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/tokengate"))
        secret_path = state_dir / ".token_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".token_secret_", suffix=".tmp"
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
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("token_secret_generated", path=str(secret_path))
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
