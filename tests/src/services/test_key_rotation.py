"""
Tests for KeyMigrator: lazy re-encryption after rotation.

Covers:
- Draining a retired key and destroying it
- Bounded batches
- Corrupt records keep their key pending
- Interrupted runs resume without losing records
"""

import asyncio
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from src.lib.encryption import CryptoEngine
from src.lib.exceptions import KeyMismatch
from src.lib.key_manager import KeyState
from src.models.action_log import LogType
from src.services.key_rotation import KeyMigrator, MigrationStatus
from src.services.record_store import StoredRecord

BASE_TIME = datetime(2025, 7, 1, 9, 0, tzinfo=UTC)


async def seed(store, crypto, key, count, feedback=False):
    ids = []
    for n in range(count):
        created = BASE_TIME + timedelta(minutes=n)
        record = StoredRecord(
            id=str(uuid.uuid4()),
            created_at=created,
            updated_at=created,
            category=LogType.SUCCESS,
            content_ciphertext=crypto.encrypt_text(f"entry {n}", key),
            feedback_ciphertext=crypto.encrypt_text(f"feedback {n}", key) if feedback else None,
            prevented_calories=100,
            emotion_tags=(),
            key_id=key.key_id,
        )
        ids.append(await store.create(record))
    return ids


class InterruptingCryptoEngine(CryptoEngine):
    """Raises CancelledError from the N-th re-encryption, like a cancelled task."""

    def __init__(self, interrupt_after):
        self.interrupt_after = interrupt_after
        self.calls = 0

    def reencrypt_bytes(self, data, old_key, new_key):
        self.calls += 1
        if self.calls == self.interrupt_after:
            raise asyncio.CancelledError()
        return super().reencrypt_bytes(data, old_key, new_key)


class TestKeyMigrator:
    """Test the maintenance run."""

    @pytest.mark.asyncio
    async def test_drains_and_destroys_retired_key(self, record_store, key_manager, crypto, memory_key_store):
        old_key = await key_manager.get_active_key()
        ids = await seed(record_store, crypto, old_key, 7, feedback=True)
        new_key = await key_manager.rotate_key()

        migrator = KeyMigrator(key_manager, record_store, crypto, batch_size=3)
        report = await migrator.run()

        assert report.migrated == 7
        assert report.destroyed_key_ids == [old_key.key_id]
        assert report.complete
        assert migrator.status is MigrationStatus.COMPLETED
        assert key_manager.key_state(old_key.key_id) is None
        assert not memory_key_store.holds(old_key.key_id)

        for record_id in ids:
            stored = await record_store.read(record_id)
            assert stored.key_id == new_key.key_id
            assert crypto.decrypt_text(stored.content_ciphertext, new_key).startswith("entry")
            assert crypto.decrypt_text(stored.feedback_ciphertext, new_key).startswith("feedback")

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, record_store, key_manager, crypto):
        report = await KeyMigrator(key_manager, record_store, crypto).run()

        assert report.migrated == 0
        assert report.complete

    @pytest.mark.asyncio
    async def test_corrupt_record_keeps_key_pending(self, record_store, key_manager, crypto):
        old_key = await key_manager.get_active_key()
        await seed(record_store, crypto, old_key, 4)
        bad_id = (await seed(record_store, crypto, old_key, 1))[0]
        bad = await record_store.read(bad_id)
        tampered = bytearray(bad.content_ciphertext)
        tampered[-1] ^= 0x01
        await record_store.update(
            bad_id, lambda r: replace(r, content_ciphertext=bytes(tampered))
        )
        await key_manager.rotate_key()

        migrator = KeyMigrator(key_manager, record_store, crypto, batch_size=2)
        report = await migrator.run()

        assert report.migrated == 4
        assert report.failed_ids == [bad_id]
        assert report.pending_key_ids == [old_key.key_id]
        assert not report.complete
        assert migrator.status is MigrationStatus.PARTIAL
        assert key_manager.key_state(old_key.key_id) is KeyState.RETIRED
        assert await record_store.count_records_under_key(old_key.key_id) == 1

    @pytest.mark.asyncio
    async def test_interrupted_run_resumes(self, record_store, key_manager, crypto):
        old_key = await key_manager.get_active_key()
        ids = await seed(record_store, crypto, old_key, 6)
        new_key = await key_manager.rotate_key()

        interrupted = KeyMigrator(
            key_manager, record_store, InterruptingCryptoEngine(interrupt_after=3), batch_size=2,
        )
        with pytest.raises(asyncio.CancelledError):
            await interrupted.run()

        assert interrupted.status is MigrationStatus.CANCELLED
        assert await record_store.count_records_under_key(new_key.key_id) == 2
        assert await record_store.count_records_under_key(old_key.key_id) == 4

        # Every record is readable under the key its tag names
        for record_id in ids:
            stored = await record_store.read(record_id)
            handle = await key_manager.get_key(stored.key_id)
            assert crypto.decrypt_text(stored.content_ciphertext, handle).startswith("entry")

        report = await KeyMigrator(key_manager, record_store, crypto, batch_size=2).run()

        assert report.migrated == 4
        assert report.destroyed_key_ids == [old_key.key_id]

    @pytest.mark.asyncio
    async def test_schedule_and_wait(self, record_store, key_manager, crypto):
        old_key = await key_manager.get_active_key()
        await seed(record_store, crypto, old_key, 3)
        await key_manager.rotate_key()

        migrator = KeyMigrator(key_manager, record_store, crypto)
        task = migrator.schedule()

        assert migrator.schedule() is task
        report = await migrator.wait()

        assert report.migrated == 3
        assert not migrator.is_running
        with pytest.raises(KeyMismatch):
            await key_manager.get_key(old_key.key_id)

    @pytest.mark.asyncio
    async def test_cancel_scheduled_run(self, record_store, key_manager, crypto):
        old_key = await key_manager.get_active_key()
        await seed(record_store, crypto, old_key, 3)
        await key_manager.rotate_key()

        migrator = KeyMigrator(key_manager, record_store, crypto)
        migrator.schedule()
        await migrator.cancel()

        assert migrator.status is MigrationStatus.CANCELLED
        assert not migrator.is_running

        report = await migrator.run()
        assert report.destroyed_key_ids == [old_key.key_id]
