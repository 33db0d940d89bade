from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session services."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/civicauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and relaxes startup checks for the test suite.",
    )

    # Signing secrets are validated by the secret provisioner, not here
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("civicauth", "JWT_ISSUER")
    jwt_audience: str = env_field("civic-clients", "JWT_AUDIENCE")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", gt=0)
    session_active_window_minutes: int = env_field(
        30,
        "SESSION_ACTIVE_WINDOW_MINUTES",
        gt=0,
        description="A session counts as active if it was touched within this window.",
    )
    device_trust_days: int = env_field(7, "DEVICE_TRUST_DAYS", gt=0)
    passkey_challenge_ttl_seconds: int = env_field(
        300, "PASSKEY_CHALLENGE_TTL_SECONDS", gt=0
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS", gt=0)

    totp_window_steps: int = env_field(2, "TOTP_WINDOW_STEPS", ge=0, le=10)
    totp_issuer: str = env_field("CivicNet", "TOTP_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS", gt=0)

    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(
        None, "OAUTH_FACEBOOK_CLIENT_SECRET"
    )
    oauth_twitter_client_id: str | None = env_field(None, "OAUTH_TWITTER_CLIENT_ID")
    oauth_twitter_client_secret: str | None = env_field(None, "OAUTH_TWITTER_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", "mfa_encryption_key", "redis_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def oauth_client(self, provider: str) -> tuple[str | None, str | None]:
        """Return the (client_id, client_secret) pair configured for a provider."""
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


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
