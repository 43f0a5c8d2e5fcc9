from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenvault.logging import get_logger
from tokenvault.service.fingerprint import check_algorithm

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Persistence backends the token engine can run against."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance and storage."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokenvault", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON state file; unset keeps state in process only",
    )
    token_hash_algorithm: str = env_field(
        "sha256",
        "TOKEN_HASH_ALGORITHM",
        description="hashlib digest used to build token fingerprints",
    )
    session_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of user and application tokens",
    )
    reset_token_ttl_minutes: int = env_field(
        60 * 24,
        "RESET_TOKEN_TTL_MINUTES",
        description="Window in which a password-reset token may be consumed",
    )
    app_token_seed: str = env_field("tokenvault-app-token", "APP_TOKEN_SEED")
    max_issue_attempts: int = env_field(
        5,
        "MAX_ISSUE_ATTEMPTS",
        description="Fingerprint regenerations allowed after a duplicate-key insert",
    )
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")

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

    @field_validator("token_hash_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        return check_algorithm(value.lower())

    @field_validator(
        "session_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "max_issue_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
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
