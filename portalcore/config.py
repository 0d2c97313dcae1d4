from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalcore.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_SSO_PROVIDERS = ("google", "microsoft", "github")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tenant and identity core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/portalcore", "DATABASE_URL"
    )
    default_tenant_database_url: str | None = env_field(
        None,
        "DEFAULT_TENANT_DATABASE_URL",
        description="Write endpoint for organizations created without one; defaults to DATABASE_URL",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for memory-store snapshots and the generated JWT secret",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("portalcore", "JWT_ISSUER")
    jwt_audience: str = env_field("portal-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Fixed lifetime of an issued token pair; no sliding expiry",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Federated login
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    sso_state_ttl_seconds: int = env_field(300, "SSO_STATE_TTL_SECONDS")
    sso_require_state: bool = env_field(
        False,
        "SSO_REQUIRE_STATE",
        description="Reject callbacks that carry no state parameter",
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_microsoft_tenant: str = env_field("common", "OAUTH_MICROSOFT_TENANT")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_allowed_domains: list[str] = env_field(
        [],
        "OAUTH_ALLOWED_DOMAINS",
        description="Comma separated email domains accepted from env-configured providers",
    )
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    tenant_connect_timeout_seconds: int = env_field(10, "TENANT_CONNECT_TIMEOUT_SECONDS")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Portal", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated browser origins; empty means FRONTEND_URL only",
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

    @property
    def tenant_write_endpoint(self) -> str:
        return self.default_tenant_database_url or self.database_url

    @field_validator("oauth_allowed_domains", mode="before")
    @classmethod
    def _split_domains(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [d.strip().lower() for d in value if d and d.strip()]

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [o.strip().rstrip("/") for o in value if o and o.strip()]

    @field_validator("session_ttl_minutes", "password_reset_ttl_minutes")
    @classmethod
    def _positive_minutes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        root = Path(os.getenv("STATE_DIR") or tempfile.gettempdir()) / "portalcore"
        secret_path = root / ".jwt_secret"
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=".jwt_secret_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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
