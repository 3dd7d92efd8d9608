"""
Shared test fixtures for EatLock.

This module provides common fixtures used across all test modules:
- Environment setup (dev mode, in-memory key store)
- File-backed SQLite record store in tmp_path
- KeyManager over an in-memory key store
- A started LogRepository wired to both

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

import pytest
import structlog

# ---------------------------------------------------------------------------
# 1. Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

os.environ.setdefault("EATLOCK_DEV_MODE", "1")
os.environ.setdefault("EATLOCK_KEY_STORE", "memory")

# ---------------------------------------------------------------------------
# Application imports (after env vars are set)
# ---------------------------------------------------------------------------

from src.lib.encryption import CryptoEngine, KeyHandle  # noqa: E402
from src.lib.key_manager import KeyManager, MemoryKeyStore  # noqa: E402
from src.services.log_repository import LogRepository  # noqa: E402
from src.services.record_store import SecureRecordStore  # noqa: E402

FIXED_NOW = datetime(2025, 7, 4, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# 2. Helpers
# ---------------------------------------------------------------------------

class CountingCryptoEngine(CryptoEngine):
    """CryptoEngine that counts decryptions."""

    def __init__(self) -> None:
        self.decryptions = 0

    def decrypt(self, ciphertext, key):  # type: ignore[no-untyped-def]
        self.decryptions += 1
        return super().decrypt(ciphertext, key)


class FakeClock:
    """Settable wall clock for the repository."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ---------------------------------------------------------------------------
# 3. Crypto fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def crypto():
    return CryptoEngine()


@pytest.fixture()
def key_a():
    return KeyHandle("k-test-a", CryptoEngine.generate_key_material())


@pytest.fixture()
def key_b():
    return KeyHandle("k-test-b", CryptoEngine.generate_key_material())


# ---------------------------------------------------------------------------
# 4. Storage fixtures -- a fresh SQLite file per test
# ---------------------------------------------------------------------------

@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'eatlock-test.db'}"


@pytest.fixture()
async def record_store(database_url):
    """
    Provide a SecureRecordStore with its schema created.

    The engine is disposed after the test finishes.
    """
    store = SecureRecordStore.from_url(database_url, page_size=5)
    await store.create_schema()
    yield store
    await store.dispose()


# ---------------------------------------------------------------------------
# 5. Key fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def memory_key_store():
    return MemoryKeyStore()


@pytest.fixture()
async def key_manager(memory_key_store, record_store):
    """An initialized KeyManager without an authentication gate."""
    manager = KeyManager(
        memory_key_store,
        reference_counter=record_store.count_records_under_key,
    )
    await manager.initialize()
    yield manager
    await manager.teardown()


# ---------------------------------------------------------------------------
# 6. Repository fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def counting_crypto():
    return CountingCryptoEngine()


@pytest.fixture()
async def repository(database_url, memory_key_store, clock, counting_crypto):
    """
    Provide a started LogRepository over a file-backed store.

    Torn down after the test (idempotent if the test already did it).
    """
    store = SecureRecordStore.from_url(database_url, page_size=5)
    keys = KeyManager(memory_key_store, reference_counter=store.count_records_under_key)
    repo = LogRepository(
        store,
        keys,
        crypto=counting_crypto,
        migration_batch_size=3,
        clock=clock,
    )
    await repo.start()
    yield repo
    await repo.teardown()


# ---------------------------------------------------------------------------
# 7. Logging reset -- setup_logging() binds handlers to the current stderr
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
