"""
Wiring for EatLock.

Builds the services explicitly from Settings: nothing here is a global
singleton, and every collaborator can be replaced by passing it in.

Usage:
    settings = Settings.from_env()
    repo = await open_repository(settings, authenticator=platform_auth,
                                 capability=DeviceCapability.BIOMETRIC)
    ...
    await repo.teardown()
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url

from src.config.settings import Settings
from src.lib.exceptions import ConfigurationError
from src.lib.key_manager import (
    Authenticator,
    DeviceCapability,
    KeyManager,
    KeyringKeyStore,
    MemoryKeyStore,
    SecureKeyStore,
)
from src.lib.logging import setup_logging
from src.services.feedback_generator import FeedbackGenerator
from src.services.log_repository import LogRepository
from src.services.record_store import SecureRecordStore


def build_key_store(settings: Settings) -> SecureKeyStore:
    if settings.key_store == "memory":
        if settings.is_production:
            raise ConfigurationError("The in-memory key store is not allowed in production")
        return MemoryKeyStore()
    return KeyringKeyStore(settings.keyring_service)


def ensure_database_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return
    database = url.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def build_repository(
    settings: Settings,
    authenticator: Authenticator | None = None,
    capability: DeviceCapability | None = None,
    feedback_generator: FeedbackGenerator | None = None,
    key_store: SecureKeyStore | None = None,
) -> LogRepository:
    """
    Assemble store, key manager and repository. Does not start anything.

    Args:
        settings: Runtime configuration
        authenticator: Platform biometric/passcode prompt
        capability: What the device offers, as reported by the platform.
            Defaults to PASSCODE when settings.require_auth is set, else NONE.
        feedback_generator: AI feedback collaborator (keyword rules if None)
        key_store: Overrides the store chosen by settings

    Raises:
        ConfigurationError: Settings and collaborators do not fit together
    """
    if capability is None:
        capability = DeviceCapability.PASSCODE if settings.require_auth else DeviceCapability.NONE
    if settings.require_auth and not capability.requires_gate:
        raise ConfigurationError(
            "EATLOCK_REQUIRE_AUTH=1 but the device offers no biometric or passcode authentication"
        )

    ensure_database_directory(settings.database_url)
    store = SecureRecordStore.from_url(settings.database_url)
    keys = KeyManager(
        key_store or build_key_store(settings),
        capability=capability,
        authenticator=authenticator,
        unlock_timeout=settings.unlock_timeout,
        reference_counter=store.count_records_under_key,
    )
    return LogRepository(
        store,
        keys,
        feedback_generator=feedback_generator,
        stats_cache_size=settings.stats_cache_size,
        migration_batch_size=settings.migration_batch_size,
        auto_delete_days=settings.auto_delete_days,
    )


async def open_repository(
    settings: Settings | None = None,
    authenticator: Authenticator | None = None,
    capability: DeviceCapability | None = None,
    feedback_generator: FeedbackGenerator | None = None,
) -> LogRepository:
    """Configure logging, build the repository and start it."""
    settings = settings or Settings.from_env()
    setup_logging(dev_mode=settings.dev_mode, log_level=settings.log_level)
    repository = build_repository(
        settings,
        authenticator=authenticator,
        capability=capability,
        feedback_generator=feedback_generator,
    )
    await repository.start()
    return repository


__all__ = [
    "build_key_store",
    "build_repository",
    "ensure_database_directory",
    "open_repository",
]
