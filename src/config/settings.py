"""
Runtime configuration for EatLock.

All settings come from environment variables (prefix ``EATLOCK_``), the same
way the rest of the codebase reads ``EATLOCK_DEV_MODE`` and ``LOG_LEVEL``.

Variables:
    EATLOCK_DATABASE_URL           SQLAlchemy async URL (default: sqlite+aiosqlite in ~/.eatlock)
    EATLOCK_KEY_STORE              "keyring" (default) or "memory" (dev/test only)
    EATLOCK_KEYRING_SERVICE        keyring service name (default: "eatlock")
    EATLOCK_REQUIRE_AUTH           "1" to gate key access behind device authentication
    EATLOCK_UNLOCK_TIMEOUT         seconds an unlock stays valid (default: 300, 0 = until locked)
    EATLOCK_MIGRATION_BATCH_SIZE   records re-encrypted per migration batch (default: 50)
    EATLOCK_STATS_CACHE_SIZE       cached statistic windows (default: 64)
    EATLOCK_AUTO_DELETE_DAYS       purge entries older than N days (default: unset = keep)
    EATLOCK_DEV_MODE               "1" for console logs and relaxed checks
    EATLOCK_ENVIRONMENT            "production" blocks dev-only options
    LOG_LEVEL                      stdlib level name (default: INFO)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from src.lib.exceptions import ConfigurationError

KeyStoreKind = Literal["keyring", "memory"]

VALID_KEY_STORES: set[str] = {"keyring", "memory"}

DEFAULT_DATA_DIR = Path.home() / ".eatlock"


@dataclass(frozen=True)
class Settings:
    """Immutable application settings."""

    database_url: str
    key_store: KeyStoreKind = "keyring"
    keyring_service: str = "eatlock"
    require_auth: bool = False
    unlock_timeout: float | None = 300.0
    migration_batch_size: int = 50
    stats_cache_size: int = 64
    auto_delete_days: int | None = None
    dev_mode: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a value is malformed or a dev-only option
                is requested in production
        """
        env = os.environ if environ is None else environ

        environment = env.get("EATLOCK_ENVIRONMENT", "development")
        dev_mode = env.get("EATLOCK_DEV_MODE") == "1"

        key_store = env.get("EATLOCK_KEY_STORE", "keyring")
        if key_store not in VALID_KEY_STORES:
            raise ConfigurationError(
                f"EATLOCK_KEY_STORE must be one of {sorted(VALID_KEY_STORES)}, got '{key_store}'"
            )
        if key_store == "memory" and environment == "production":
            raise ConfigurationError(
                "FATAL: EATLOCK_KEY_STORE=memory is set but EATLOCK_ENVIRONMENT=production. "
                "Refusing to keep encryption keys outside the secure key store."
            )

        unlock_timeout: float | None = _parse_float(env, "EATLOCK_UNLOCK_TIMEOUT", 300.0)
        if unlock_timeout is not None and unlock_timeout <= 0:
            unlock_timeout = None

        batch_size = _parse_int(env, "EATLOCK_MIGRATION_BATCH_SIZE", 50)
        if batch_size is None or batch_size < 1:
            raise ConfigurationError("EATLOCK_MIGRATION_BATCH_SIZE must be a positive integer")

        cache_size = _parse_int(env, "EATLOCK_STATS_CACHE_SIZE", 64)
        if cache_size is None or cache_size < 1:
            raise ConfigurationError("EATLOCK_STATS_CACHE_SIZE must be a positive integer")

        auto_delete_days = _parse_int(env, "EATLOCK_AUTO_DELETE_DAYS", None)
        if auto_delete_days is not None and auto_delete_days < 1:
            raise ConfigurationError("EATLOCK_AUTO_DELETE_DAYS must be a positive integer")

        database_url = env.get("EATLOCK_DATABASE_URL") or (
            f"sqlite+aiosqlite:///{DEFAULT_DATA_DIR / 'eatlock.db'}"
        )

        return cls(
            database_url=database_url,
            key_store=key_store,  # type: ignore[arg-type]
            keyring_service=env.get("EATLOCK_KEYRING_SERVICE", "eatlock"),
            require_auth=env.get("EATLOCK_REQUIRE_AUTH") == "1",
            unlock_timeout=unlock_timeout,
            migration_batch_size=batch_size,
            stats_cache_size=cache_size,
            auto_delete_days=auto_delete_days,
            dev_mode=dev_mode,
            environment=environment,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


def _parse_int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from e


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'") from e


__all__ = ["KeyStoreKind", "Settings", "VALID_KEY_STORES"]
