from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow ephemeral signing secrets and in-process MFA bookkeeping.",
    )

    # Token signing. Access and refresh tokens never share a key.
    access_token_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    refresh_token_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of access tokens",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of refresh tokens and of the session they belong to",
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    refresh_reuse_revokes_all: bool = env_field(
        False,
        "REFRESH_REUSE_REVOKES_ALL",
        description="On refresh-token reuse revoke every session of the account, not just the affected one",
    )

    # argon2id work factor
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # MFA
    enable_mfa: bool = env_field(
        True,
        "ENABLE_MFA",
        description="Enforce TOTP for accounts that have enrolled a second factor",
    )
    mfa_issuer_name: str = env_field("Gatehouse", "MFA_ISSUER_NAME")
    totp_window: int = env_field(
        1, "TOTP_WINDOW", description="Adjacent 30s steps accepted for clock drift"
    )
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

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
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "password_hash_time_cost",
        "password_hash_memory_cost",
        "password_hash_parallelism",
        "mfa_max_attempts",
        "mfa_lockout_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("token_leeway_seconds", "totp_window")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set"
                )
            # Ephemeral keys: every token dies with the process
            logger.warning("jwt_secrets_generated_ephemeral")
            self.access_token_secret = self.access_token_secret or secrets.token_urlsafe(48)
            self.refresh_token_secret = self.refresh_token_secret or secrets.token_urlsafe(48)
        for name in ("access_token_secret", "refresh_token_secret"):
            if len(getattr(self, name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name} must be at least {_MIN_SECRET_LENGTH} characters")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must be signed with distinct secrets")
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
