from __future__ import annotations

import os
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from walletgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_NONCE_TTL_MINUTES = 10


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    """Split a comma separated env value, trimming items and dropping empties."""

    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the wallet login service."""

    system_name: str = env_field("walletgate", "SYSTEM_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/walletgate", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/walletgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    session_secret: Optional[str] = env_field(None, "SESSION_SECRET")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Wallet login
    wallet_login_enabled: bool = env_field(
        False, "WALLET_LOGIN_ENABLED", description="Expose wallet challenge/verify flows"
    )
    wallet_allowed_chains: List[str] = env_field(
        [],
        "WALLET_ALLOWED_CHAINS",
        description="Chain ids accepted at verify time; empty allows every chain",
    )
    wallet_auto_register_enabled: bool = env_field(
        False, "WALLET_AUTO_REGISTER_ENABLED"
    )
    wallet_jwt_secret: Optional[str] = env_field(
        None,
        "WALLET_JWT_SECRET",
        description="Primary token signing secret; falls back to SESSION_SECRET",
    )
    wallet_jwt_fallback_secrets: List[str] = env_field(
        [],
        "WALLET_JWT_FALLBACK_SECRETS",
        description="Retired secrets still accepted for verification, in order",
    )
    wallet_jwt_expire_hours: Optional[int] = env_field(None, "WALLET_JWT_EXPIRE_HOURS")
    wallet_nonce_ttl_minutes: int = env_field(
        DEFAULT_NONCE_TTL_MINUTES, "WALLET_NONCE_TTL_MINUTES"
    )
    wallet_root_allowed_addresses: List[str] = env_field(
        [], "WALLET_ROOT_ALLOWED_ADDRESSES"
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

    @field_validator(
        "cors_allow_origins",
        "wallet_allowed_chains",
        "wallet_jwt_fallback_secrets",
        mode="before",
    )
    @classmethod
    def _parse_list(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator("wallet_root_allowed_addresses", mode="before")
    @classmethod
    def _parse_root_addresses(cls, value: Any) -> List[str]:
        return [item.lower() for item in _split_csv(value)]

    @field_validator("wallet_nonce_ttl_minutes", mode="before")
    @classmethod
    def _default_nonce_ttl(cls, value: Any) -> int:
        if value is None or value == "":
            return DEFAULT_NONCE_TTL_MINUTES
        try:
            ttl = int(value)
        except (TypeError, ValueError):
            logger.warning("wallet_nonce_ttl_invalid", configured=str(value))
            return DEFAULT_NONCE_TTL_MINUTES
        if ttl <= 0:
            logger.warning("wallet_nonce_ttl_invalid", configured=ttl)
            return DEFAULT_NONCE_TTL_MINUTES
        return ttl

    @field_validator("wallet_jwt_expire_hours", mode="before")
    @classmethod
    def _optional_expire_hours(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            # Left unset so token issuance fails with TokenConfigError
            logger.warning("wallet_jwt_expire_hours_invalid", configured=str(value))
            return None

    @field_validator("wallet_jwt_secret", "session_secret", mode="before")
    @classmethod
    def _blank_secret_is_unset(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @property
    def effective_wallet_jwt_secret(self) -> str:
        """Primary signing secret, falling back to the session secret."""

        return self.wallet_jwt_secret or self.session_secret or ""

    @property
    def wallet_message_prefix(self) -> str:
        return f"Login to {self.system_name}"


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
