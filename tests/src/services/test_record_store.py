"""
Tests for SecureRecordStore.

Covers:
- Create (including idempotent replay), read, update, delete
- Range queries: ordering, paging, restartability
- Metadata-only summaries
- Retention deletes
- Key migration batches
- Change events
"""

import asyncio
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from src.lib.exceptions import RecordNotFound, ValidationError
from src.models.action_log import LogType
from src.models.time_range import TimeRange
from src.services.events import ChangeKind
from src.services.record_store import ActionLogSummary, SecureRecordStore, StoredRecord

BASE_TIME = datetime(2025, 7, 1, 9, 0, tzinfo=UTC)


def make_record(crypto, key, text="resisted ice cream", created_at=BASE_TIME, **overrides):
    values = {
        "id": str(uuid.uuid4()),
        "created_at": created_at,
        "updated_at": created_at,
        "category": LogType.SUCCESS,
        "content_ciphertext": crypto.encrypt_text(text, key),
        "feedback_ciphertext": None,
        "prevented_calories": 200,
        "emotion_tags": ("proud",),
        "key_id": key.key_id,
    }
    values.update(overrides)
    return StoredRecord(**values)


@pytest.fixture
def changes(record_store):
    seen = []
    record_store.events.add_listener(seen.append)
    return seen


# =============================================================================
# Create / Read
# =============================================================================


class TestCreateRead:
    """Test create and read."""

    @pytest.mark.asyncio
    async def test_create_then_read(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        record_id = await record_store.create(record)

        stored = await record_store.read(record_id)

        assert stored == record
        assert crypto.decrypt_text(stored.content_ciphertext, key_a) == "resisted ice cream"

    @pytest.mark.asyncio
    async def test_timestamps_round_trip_as_utc(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        stored = await record_store.read(record.id)

        assert stored.created_at == BASE_TIME
        assert stored.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, record_store, crypto, key_a, changes):
        record = make_record(crypto, key_a)
        await record_store.create(record)
        await record_store.create(replace(record, prevented_calories=999))

        stored = await record_store.read(record.id)

        assert stored.prevented_calories == 200
        assert [c.kind for c in changes] == [ChangeKind.CREATED]

    @pytest.mark.asyncio
    async def test_read_missing_raises(self, record_store):
        with pytest.raises(RecordNotFound):
            await record_store.read("missing")

    @pytest.mark.asyncio
    async def test_read_many(self, record_store, crypto, key_a):
        first = make_record(crypto, key_a)
        second = make_record(crypto, key_a)
        await record_store.create(first)
        await record_store.create(second)

        found = await record_store.read_many([second.id, "missing", first.id])

        assert found == {first.id: first, second.id: second}
        assert await record_store.read_many([]) == {}

    @pytest.mark.asyncio
    async def test_exists(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        assert await record_store.exists(record.id)
        assert not await record_store.exists("missing")

    def test_repr_hides_ciphertext(self, crypto, key_a):
        record = make_record(crypto, key_a)
        assert "content_ciphertext" not in repr(record)
        assert record.id in repr(record)


# =============================================================================
# Update / Delete
# =============================================================================


class TestUpdateDelete:
    """Test update and delete."""

    @pytest.mark.asyncio
    async def test_update_applies_mutator(self, record_store, crypto, key_a, changes):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        updated = await record_store.update(record.id, lambda r: replace(r, category=LogType.FAILURE))

        assert updated.category is LogType.FAILURE
        assert updated.updated_at > record.updated_at
        assert (await record_store.read(record.id)).category is LogType.FAILURE
        assert changes[-1].kind is ChangeKind.UPDATED

    @pytest.mark.asyncio
    async def test_update_cannot_change_id_or_created_at(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        with pytest.raises(ValidationError):
            await record_store.update(record.id, lambda r: replace(r, id="other"))
        with pytest.raises(ValidationError):
            await record_store.update(
                record.id, lambda r: replace(r, created_at=r.created_at + timedelta(days=1))
            )

        assert await record_store.read(record.id) == record

    @pytest.mark.asyncio
    async def test_failed_mutator_leaves_record_unchanged(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        def broken(r):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await record_store.update(record.id, broken)

        assert await record_store.read(record.id) == record

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, record_store):
        with pytest.raises(RecordNotFound):
            await record_store.update("missing", lambda r: r)

    @pytest.mark.asyncio
    async def test_delete(self, record_store, crypto, key_a, changes):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        await record_store.delete(record.id)

        with pytest.raises(RecordNotFound):
            await record_store.read(record.id)
        with pytest.raises(RecordNotFound):
            await record_store.delete(record.id)
        assert changes[-1].kind is ChangeKind.DELETED
        assert changes[-1].created_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_delete_many_ignores_unknown(self, record_store, crypto, key_a):
        first = make_record(crypto, key_a)
        second = make_record(crypto, key_a)
        await record_store.create(first)
        await record_store.create(second)

        deleted = await record_store.delete_many([first.id, "missing", first.id])

        assert deleted == [first.id]
        assert await record_store.exists(second.id)

    @pytest.mark.asyncio
    async def test_delete_older_than(self, record_store, crypto, key_a):
        old = make_record(crypto, key_a, created_at=BASE_TIME - timedelta(days=40))
        recent = make_record(crypto, key_a, created_at=BASE_TIME)
        await record_store.create(old)
        await record_store.create(recent)

        deleted = await record_store.delete_older_than(BASE_TIME - timedelta(days=30))

        assert deleted == [old.id]
        assert not await record_store.exists(old.id)
        assert await record_store.exists(recent.id)

    @pytest.mark.asyncio
    async def test_update_uses_supplied_timestamp(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)
        stamp = BASE_TIME + timedelta(hours=3)

        updated = await record_store.update(
            record.id, lambda r: replace(r, category=LogType.OTHER), updated_at=stamp,
        )

        assert updated.updated_at == stamp
        assert (await record_store.read(record.id)).updated_at == stamp

    @pytest.mark.asyncio
    async def test_delete_truncates_write_ahead_log(self, record_store, database_url, crypto, key_a):
        record = make_record(crypto, key_a)
        await record_store.create(record)
        wal = Path(database_url.split("///", 1)[1] + "-wal")
        assert wal.stat().st_size > 0

        await record_store.delete(record.id)

        assert wal.stat().st_size == 0
        main = Path(database_url.split("///", 1)[1]).read_bytes()
        assert record.content_ciphertext not in main

    @pytest.mark.asyncio
    async def test_bulk_delete_truncates_write_ahead_log(self, record_store, database_url, crypto, key_a):
        old = make_record(crypto, key_a, created_at=BASE_TIME - timedelta(days=40))
        await record_store.create(old)
        await record_store.create(make_record(crypto, key_a))
        wal = Path(database_url.split("///", 1)[1] + "-wal")

        await record_store.delete_older_than(BASE_TIME - timedelta(days=30))

        assert wal.stat().st_size == 0
        main = Path(database_url.split("///", 1)[1]).read_bytes()
        assert old.content_ciphertext not in main

    @pytest.mark.asyncio
    async def test_delete_in_memory_database(self, crypto, key_a):
        store = SecureRecordStore.from_url("sqlite+aiosqlite:///:memory:")
        await store.create_schema()
        try:
            record = make_record(crypto, key_a)
            await store.create(record)

            await store.delete(record.id)
            assert await store.delete_many([record.id]) == []

            assert not await store.exists(record.id)
        finally:
            await store.dispose()

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_serialized(self, record_store, crypto, key_a):
        record = make_record(crypto, key_a, emotion_tags=())
        await record_store.create(record)

        async def tag(label):
            await record_store.update(
                record.id, lambda r: replace(r, emotion_tags=(*r.emotion_tags, label))
            )

        await asyncio.gather(*(tag(f"t{i}") for i in range(5)))

        stored = await record_store.read(record.id)
        assert sorted(stored.emotion_tags) == [f"t{i}" for i in range(5)]


# =============================================================================
# Range queries
# =============================================================================


class TestRangeQueries:
    """Test list_by_time_range and list_summaries."""

    @pytest.mark.asyncio
    async def test_ascending_and_bounded(self, record_store, crypto, key_a):
        records = [
            make_record(crypto, key_a, created_at=BASE_TIME + timedelta(hours=h))
            for h in (5, 1, 3, 24)
        ]
        for record in records:
            await record_store.create(record)

        window = TimeRange(BASE_TIME, BASE_TIME + timedelta(days=1))
        result = await record_store.list_by_time_range(window).to_list()

        assert [r.created_at.hour for r in result] == [10, 12, 14]

    @pytest.mark.asyncio
    async def test_paging_covers_every_record(self, record_store, crypto, key_a):
        # page_size is 5 in the fixture; identical timestamps exercise the id tiebreak
        ids = set()
        for _ in range(12):
            record = make_record(crypto, key_a)
            ids.add(record.id)
            await record_store.create(record)

        result = await record_store.list_by_time_range(TimeRange.all_time()).to_list()

        assert len(result) == 12
        assert {r.id for r in result} == ids

    @pytest.mark.asyncio
    async def test_reiteration_reflects_later_writes(self, record_store, crypto, key_a):
        sequence = record_store.list_by_time_range(TimeRange.all_time())
        await record_store.create(make_record(crypto, key_a))
        assert len([r async for r in sequence]) == 1

        await record_store.create(make_record(crypto, key_a))
        assert len([r async for r in sequence]) == 2

    @pytest.mark.asyncio
    async def test_fetch_range_newest_first(self, record_store, crypto, key_a):
        for h in range(3):
            await record_store.create(make_record(crypto, key_a, created_at=BASE_TIME + timedelta(hours=h)))

        result = await record_store.fetch_range(TimeRange.all_time(), newest_first=True)

        assert [r.created_at.hour for r in result] == [11, 10, 9]

    @pytest.mark.asyncio
    async def test_list_summaries_metadata_only(self, record_store, crypto, key_a):
        with_feedback = make_record(
            crypto, key_a, created_at=BASE_TIME + timedelta(hours=1),
            feedback_ciphertext=crypto.encrypt_text("well done", key_a),
        )
        without = make_record(crypto, key_a, created_at=BASE_TIME)
        await record_store.create(with_feedback)
        await record_store.create(without)

        summaries = await record_store.list_summaries()

        assert all(isinstance(s, ActionLogSummary) for s in summaries)
        assert [s.id for s in summaries] == [with_feedback.id, without.id]
        assert [s.has_feedback for s in summaries] == [True, False]
        assert summaries[0].emotion_tags == ("proud",)
        assert not hasattr(summaries[0], "content_ciphertext")

    @pytest.mark.asyncio
    async def test_list_summaries_by_category(self, record_store, crypto, key_a):
        success = make_record(crypto, key_a, created_at=BASE_TIME)
        failure = make_record(crypto, key_a, created_at=BASE_TIME, category=LogType.FAILURE)
        await record_store.create(success)
        await record_store.create(failure)

        failures = await record_store.list_summaries(category=LogType.FAILURE)
        outside = await record_store.list_summaries(
            TimeRange(BASE_TIME + timedelta(hours=1), BASE_TIME + timedelta(hours=2)),
            category=LogType.SUCCESS,
        )

        assert [s.id for s in failures] == [failure.id]
        assert outside == []


# =============================================================================
# Key migration
# =============================================================================


class TestMigration:
    """Test migrate_records_under_key."""

    @pytest.mark.asyncio
    async def test_batch_is_bounded(self, record_store, crypto, key_a, key_b):
        for _ in range(5):
            await record_store.create(make_record(crypto, key_a))

        batch = await record_store.migrate_records_under_key(
            key_a.key_id, key_b, lambda d: crypto.reencrypt_bytes(d, key_a, key_b), batch_size=2,
        )

        assert batch.migrated == 2
        assert batch.remaining == 3
        assert await record_store.count_records_under_key(key_b.key_id) == 2

    @pytest.mark.asyncio
    async def test_migrates_both_fields(self, record_store, crypto, key_a, key_b, changes):
        record = make_record(crypto, key_a, feedback_ciphertext=crypto.encrypt_text("nice", key_a))
        await record_store.create(record)

        await record_store.migrate_records_under_key(
            key_a.key_id, key_b, lambda d: crypto.reencrypt_bytes(d, key_a, key_b),
        )

        stored = await record_store.read(record.id)
        assert stored.key_id == key_b.key_id
        assert crypto.decrypt_text(stored.content_ciphertext, key_b) == "resisted ice cream"
        assert crypto.decrypt_text(stored.feedback_ciphertext, key_b) == "nice"
        assert stored.updated_at == record.updated_at
        assert changes[-1].kind is ChangeKind.REKEYED

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, record_store, crypto, key_a, key_b):
        await record_store.create(make_record(crypto, key_a))
        reseal = lambda d: crypto.reencrypt_bytes(d, key_a, key_b)  # noqa: E731

        first = await record_store.migrate_records_under_key(key_a.key_id, key_b, reseal)
        second = await record_store.migrate_records_under_key(key_a.key_id, key_b, reseal)

        assert first.migrated == 1
        assert second.migrated == 0
        assert second.remaining == 0

    @pytest.mark.asyncio
    async def test_corrupt_record_reported_and_left_behind(self, record_store, crypto, key_a, key_b):
        good = make_record(crypto, key_a)
        data = bytearray(crypto.encrypt_text("tampered", key_a))
        data[-1] ^= 0x01
        bad = make_record(crypto, key_a, content_ciphertext=bytes(data))
        await record_store.create(good)
        await record_store.create(bad)

        batch = await record_store.migrate_records_under_key(
            key_a.key_id, key_b, lambda d: crypto.reencrypt_bytes(d, key_a, key_b),
        )

        assert batch.migrated == 1
        assert batch.failed_ids == (bad.id,)
        assert batch.remaining == 1
        assert (await record_store.read(bad.id)).key_id == key_a.key_id

    @pytest.mark.asyncio
    async def test_skip_ids(self, record_store, crypto, key_a, key_b):
        record = make_record(crypto, key_a)
        await record_store.create(record)

        batch = await record_store.migrate_records_under_key(
            key_a.key_id, key_b, lambda d: crypto.reencrypt_bytes(d, key_a, key_b),
            skip_ids={record.id},
        )

        assert batch.migrated == 0
        assert batch.failed_ids == ()
        assert batch.remaining == 1

    @pytest.mark.asyncio
    async def test_referenced_key_ids(self, record_store, crypto, key_a, key_b):
        await record_store.create(make_record(crypto, key_a))
        await record_store.create(make_record(crypto, key_b))

        assert await record_store.referenced_key_ids() == {key_a.key_id, key_b.key_id}
