from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from istream.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(name: str) -> str:
    """Load or create a signing secret stored under SHARED_FS_ROOT.

    Tokens stay valid across restarts when no secret is configured explicitly.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/istream"))
    secret_path = fs_root / f".{name}"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it via env or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity, session and engagement core."""

    database_url: str = env_field("postgresql://localhost:5432/istream", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/istream", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    media_base_url: str = env_field("http://localhost:8000/media", "MEDIA_BASE_URL")
    cors_origin: str = env_field(
        "http://localhost:3000",
        "CORS_ORIGIN",
        description="Frontend origin; OAuth callbacks redirect here",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token authority
    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("istream", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 10, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )

    # Credential store / OTP
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    require_verified_login: bool = env_field(
        False,
        "REQUIRE_VERIFIED_LOGIN",
        description="Reject password logins from accounts that have not completed OTP verification",
    )

    # Collaborator timeouts
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS", gt=0)
    storage_timeout_seconds: float = env_field(30.0, "STORAGE_TIMEOUT_SECONDS", gt=0)
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_google_redirect_uri: str | None = env_field(None, "GOOGLE_CALLBACK_URL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("iStream", "EMAIL_FROM_NAME")

    # Lists
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

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

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _persisted_secret("access_token_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _persisted_secret("refresh_token_secret")

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use distinct signing secrets")
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
