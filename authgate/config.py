from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


class IdentityProviderKind(str, Enum):
    """Which IdentityProviderClient implementation the runtime wires in."""

    MEMORY = "memory"
    HTTP = "http"


class CookieSameSite(str, Enum):
    STRICT = "strict"
    LAX = "lax"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings, read from the environment and an optional .env file."""

    app_version: str = env_field("0.1.0", "APP_VERSION")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )

    # Signing material. JWT_SECRET_FILE wins over JWT_SECRET and is re-read on reload.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_secret_file: str | None = env_field(None, "JWT_SECRET_FILE")
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    session_max_lifetime_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_MAX_LIFETIME_MINUTES",
        gt=0,
        description="Sessions are garbage collected once this lifetime elapses",
    )
    clock_skew_seconds: int = env_field(0, "CLOCK_SKEW_SECONDS", ge=0)
    refresh_reuse_grace_seconds: int = env_field(
        0,
        "REFRESH_REUSE_GRACE_SECONDS",
        ge=0,
        description="Window in which the immediately prior refresh token is rejected "
        "without revoking the session; 0 means strict single use",
    )
    check_revocation_on_verify: bool = env_field(
        True,
        "CHECK_REVOCATION_ON_VERIFY",
        description="Consult the subject floor and session flag on every protected request",
    )

    global_rate_limit: int = env_field(1000, "GLOBAL_RATE_LIMIT")
    global_rate_limit_window_seconds: int = env_field(
        15 * 60, "GLOBAL_RATE_LIMIT_WINDOW_SECONDS"
    )
    auth_rate_limit: int = env_field(5, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    rate_limit_allowlist: list[str] = env_field([], "RATE_LIMIT_ALLOWLIST")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client key",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    refresh_cookie_samesite: CookieSameSite = env_field(
        CookieSameSite.STRICT, "REFRESH_COOKIE_SAMESITE"
    )

    identity_provider: IdentityProviderKind = env_field(
        IdentityProviderKind.HTTP, "IDENTITY_PROVIDER"
    )
    identity_provider_url: str | None = env_field(None, "IDENTITY_PROVIDER_URL")
    identity_provider_api_key: str | None = env_field(None, "IDENTITY_PROVIDER_API_KEY")
    identity_provider_timeout_seconds: float = env_field(
        10.0, "IDENTITY_PROVIDER_TIMEOUT_SECONDS", gt=0
    )
    revoke_provider_grants: bool = env_field(
        True,
        "REVOKE_PROVIDER_GRANTS",
        description="Also revoke provider-side grants on mass revocation",
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

    @field_validator("rate_limit_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("redis_url", "jwt_secret", "jwt_secret_file", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.refresh_token_ttl_minutes > self.session_max_lifetime_minutes:
            raise ValueError(
                "REFRESH_TOKEN_TTL_MINUTES must not exceed SESSION_MAX_LIFETIME_MINUTES"
            )
        if self.identity_provider == IdentityProviderKind.HTTP and not self.identity_provider_url:
            if not self.test_mode:
                raise ValueError("IDENTITY_PROVIDER_URL is required for the http identity provider")
            logger.warning("identity_provider_url_missing_test_mode")
        if not self.refresh_cookie_secure:
            logger.warning(
                "refresh_cookie_insecure",
                message="REFRESH_COOKIE_SECURE=false; only use for local development",
            )
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @property
    def session_max_lifetime_seconds(self) -> int:
        return self.session_max_lifetime_minutes * 60


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
