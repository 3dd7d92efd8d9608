"""
LogRepository: the public façade over EatLock's encrypted action logs.

Every caller goes through this class. It encrypts on the way in, decrypts
on the way out through a small set of secure accessors, and hands out only
metadata summaries everywhere else.

Secure accessor contract:
- get_secure_content / get_secure_feedback / get_short_secure_content and
  their batch forms are the only methods that return plaintext, and they
  return it straight to the caller without caching it
- No public method returns stored ciphertext
- Plaintext is never logged; log lines carry record ids and key ids only

Usage:
    repo = LogRepository(store, keys)
    await repo.start()
    summary = await repo.add_entry("Skipped the midnight ice cream", LogType.SUCCESS)
    text = await repo.get_secure_content(summary.id)
    stats = await repo.todays_statistics()
    await repo.teardown()

References:
    - src/services/record_store.py (ciphertext at rest)
    - src/lib/key_manager.py (key ownership, auth gate)
    - src/services/key_rotation.py (background re-encryption)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum

import structlog

from src.lib.encryption import Ciphertext, CryptoEngine, KeyHandle
from src.lib.exceptions import (
    AuthenticationFailure,
    FeedbackGenerationError,
    KeyMismatch,
    RecordNotFound,
    RepositoryClosedError,
    StorageFailure,
    ValidationError,
)
from src.lib.key_manager import KeyManager
from src.models.action_log import (
    MAX_CONTENT_LENGTH,
    MAX_EMOTION_TAG_LENGTH,
    MAX_EMOTION_TAGS,
    SHORT_CONTENT_LENGTH,
    LogType,
    utcnow,
)
from src.models.time_range import TimeRange
from src.services.events import RecordChangeBus
from src.services.feedback_generator import FeedbackGenerator, KeywordFeedbackGenerator
from src.services.key_rotation import KeyMigrator, MaintenanceReport, MigrationStatus
from src.services.record_store import ActionLogSummary, SecureRecordStore, StoredRecord
from src.services.statistics import (
    ActionLogStats,
    StatisticsCache,
    StatsAccumulator,
    anchor_day_for,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Validation
# =============================================================================

def normalize_content(content: str) -> str:
    """Trim and check an entry's text."""
    if not isinstance(content, str):
        raise ValidationError("Content must be text")
    text = content.strip()
    if not text:
        raise ValidationError("Content must not be empty")
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Content must be at most {MAX_CONTENT_LENGTH} characters")
    return text


def normalize_tag(tag: str) -> str:
    if not isinstance(tag, str):
        raise ValidationError("Emotion tags must be text")
    label = tag.strip()
    if not label:
        raise ValidationError("Emotion tags must not be empty")
    if len(label) > MAX_EMOTION_TAG_LENGTH:
        raise ValidationError(f"Emotion tags must be at most {MAX_EMOTION_TAG_LENGTH} characters")
    return label


def normalize_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    """Trim, validate and de-duplicate tags, keeping first-seen order."""
    if tags is None:
        return ()
    if isinstance(tags, str):
        raise ValidationError("Emotion tags must be a list of labels")
    labels = tuple(dict.fromkeys(normalize_tag(tag) for tag in tags))
    if len(labels) > MAX_EMOTION_TAGS:
        raise ValidationError(f"At most {MAX_EMOTION_TAGS} emotion tags per entry")
    return labels


def validate_calories(value: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Prevented calories must be a whole number")
    if value < 0:
        raise ValidationError("Prevented calories must not be negative")
    return value


def shorten(text: str, limit: int = SHORT_CONTENT_LENGTH) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


# =============================================================================
# Types
# =============================================================================

class RepositoryState(StrEnum):
    NEW = "new"
    STARTED = "started"
    CLOSED = "closed"


@dataclass(frozen=True)
class RotationState:
    """Which key seals new writes, and which keys are still being drained."""

    active_key_id: str
    retiring_key_ids: frozenset[str]
    migration_status: MigrationStatus

    @property
    def is_rotating(self) -> bool:
        return bool(self.retiring_key_ids)


class _KeyMoved(Exception):
    """The record was re-keyed between preparing an update and applying it."""


class _Sealer:
    """Seals fields under the active key inside an update mutator."""

    def __init__(self, crypto: CryptoEngine, record_key: KeyHandle, active_key: KeyHandle) -> None:
        self._crypto = crypto
        self._record_key = record_key
        self.active_key = active_key

    def seal(self, text: str) -> bytes:
        return self._crypto.encrypt_text(text, self.active_key)

    def carry(self, data: bytes | None) -> bytes | None:
        """Re-seal an untouched field so both fields share the active key."""
        if data is None or self._record_key == self.active_key:
            return data
        return self._crypto.reencrypt_bytes(data, self._record_key, self.active_key)


# =============================================================================
# Repository
# =============================================================================

class LogRepository:
    """
    Encrypted action-log repository.

    Args:
        store: Record store (ciphertext at rest)
        keys: Key manager (must be wired to store.count_records_under_key
            for key destruction)
        crypto: Crypto engine
        feedback_generator: In-process AI feedback collaborator
        stats_cache_size: Cached statistic windows
        migration_batch_size: Records re-sealed per migration batch
        auto_delete_days: Purge entries older than this on start()
        clock: Returns the current aware datetime
        tz: Timezone that defines calendar days for statistics
    """

    MAX_SEAL_ATTEMPTS = 3

    def __init__(
        self,
        store: SecureRecordStore,
        keys: KeyManager,
        crypto: CryptoEngine | None = None,
        feedback_generator: FeedbackGenerator | None = None,
        stats_cache_size: int = StatisticsCache.DEFAULT_MAX_ENTRIES,
        migration_batch_size: int = KeyMigrator.DEFAULT_BATCH_SIZE,
        auto_delete_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = UTC,
    ) -> None:
        self._store = store
        self._keys = keys
        self._crypto = crypto or CryptoEngine()
        self._feedback = feedback_generator or KeywordFeedbackGenerator()
        self._stats = StatisticsCache(self._compute_statistics, max_entries=stats_cache_size)
        self._migrator = KeyMigrator(keys, store, self._crypto, batch_size=migration_batch_size)
        self._auto_delete_days = auto_delete_days
        self._clock = clock
        self._tz = tz
        self._state = RepositoryState.NEW

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RepositoryState:
        return self._state

    @property
    def events(self) -> RecordChangeBus:
        """Change channel for UI surfaces (metadata only)."""
        return self._store.events

    async def start(self) -> None:
        """
        Prepare storage and keys.

        Applies the auto-delete policy and resumes any interrupted key
        migration in the background.
        """
        if self._state is RepositoryState.CLOSED:
            raise RepositoryClosedError("Repository was torn down")
        if self._state is RepositoryState.STARTED:
            return

        await self._store.create_schema()
        await self._keys.initialize()
        self._store.events.add_listener(self._stats.invalidate)
        self._state = RepositoryState.STARTED
        logger.info("repository_started", active_key_id=self._keys.active_key_id)

        if self._auto_delete_days is not None:
            await self.purge_older_than(self._auto_delete_days)
        if self._keys.retired_key_ids:
            self._migrator.schedule()

    async def teardown(self) -> None:
        """Stop background work and drop all key material."""
        if self._state is RepositoryState.CLOSED:
            return
        self._state = RepositoryState.CLOSED
        await self._migrator.cancel()
        self._store.events.remove_listener(self._stats.invalidate)
        self._stats.clear()
        await self._keys.teardown()
        await self._store.dispose()
        logger.info("repository_closed")

    def _ensure_started(self) -> None:
        if self._state is not RepositoryState.STARTED:
            raise RepositoryClosedError(f"Repository is {self._state.value}, not started")

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def add_entry(
        self,
        content: str,
        category: LogType = LogType.OTHER,
        emotion_tags: Iterable[str] | None = None,
        prevented_calories: int | None = None,
    ) -> ActionLogSummary:
        """
        Encrypt and store a new entry.

        Raises:
            ValidationError: Content, tags or calories are invalid
            KeyUnavailable / AuthenticationRequired: No key access
            StorageFailure: The write failed (not retried)
        """
        self._ensure_started()
        text = normalize_content(content)
        tags = normalize_tags(emotion_tags)
        calories = validate_calories(prevented_calories)
        category = LogType(category)

        key = await self._keys.get_active_key()
        now = self._clock()
        record = StoredRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            category=category,
            content_ciphertext=self._crypto.encrypt_text(text, key),
            feedback_ciphertext=None,
            prevented_calories=calories,
            emotion_tags=tags,
            key_id=key.key_id,
        )
        await self._store.create(record)
        logger.info("entry_added", record_id=record.id, category=category.value)
        return ActionLogSummary.from_record(record)

    # -------------------------------------------------------------------------
    # Secure accessors
    # -------------------------------------------------------------------------

    async def get_secure_content(self, record_id: str) -> str:
        """
        Decrypt an entry's text.

        Raises:
            RecordNotFound: The entry does not exist
            AuthenticationFailure: The stored ciphertext is corrupted
            KeyMismatch: The key it was sealed under no longer exists
        """
        self._ensure_started()
        record = await self._store.read(record_id)
        return await self._open(record.id, record.content_ciphertext)

    async def get_secure_feedback(self, record_id: str) -> str | None:
        """Decrypt an entry's AI feedback, or None if none was attached."""
        self._ensure_started()
        record = await self._store.read(record_id)
        if record.feedback_ciphertext is None:
            return None
        return await self._open(record.id, record.feedback_ciphertext)

    async def get_secure_contents(self, record_ids: Iterable[str]) -> dict[str, str]:
        """
        Decrypt the text of several entries, keyed by id in request order.

        Records are fetched in one query but each is decrypted on its own;
        nothing is cached. Fails as a whole on the first missing or
        unreadable entry.

        Raises:
            RecordNotFound: One of the entries does not exist
            AuthenticationFailure / KeyMismatch: as get_secure_content()
        """
        self._ensure_started()
        contents: dict[str, str] = {}
        for record in await self._read_all(record_ids):
            contents[record.id] = await self._open(record.id, record.content_ciphertext)
        return contents

    async def get_secure_feedbacks(self, record_ids: Iterable[str]) -> dict[str, str | None]:
        """Batch get_secure_feedback(); same failure rules as get_secure_contents()."""
        self._ensure_started()
        feedbacks: dict[str, str | None] = {}
        for record in await self._read_all(record_ids):
            if record.feedback_ciphertext is None:
                feedbacks[record.id] = None
            else:
                feedbacks[record.id] = await self._open(record.id, record.feedback_ciphertext)
        return feedbacks

    async def _read_all(self, record_ids: Iterable[str]) -> list[StoredRecord]:
        ids = list(dict.fromkeys(record_ids))
        found = await self._store.read_many(ids)
        missing = [rid for rid in ids if rid not in found]
        if missing:
            raise RecordNotFound(missing[0])
        return [found[rid] for rid in ids]

    async def get_short_secure_content(self, record_id: str, limit: int = SHORT_CONTENT_LENGTH) -> str:
        """List-view preview: the first ``limit`` characters plus an ellipsis."""
        return shorten(await self.get_secure_content(record_id), limit)

    async def _open(self, record_id: str, data: bytes) -> str:
        """Decrypt with the key the envelope names: the active key or a retired one."""
        try:
            key = await self._keys.get_key(Ciphertext.key_id_of(data))
            return self._crypto.decrypt_text(data, key)
        except (AuthenticationFailure, KeyMismatch) as e:
            logger.warning("record_decrypt_failed", record_id=record_id, error=type(e).__name__)
            raise

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def get_summary(self, record_id: str) -> ActionLogSummary:
        self._ensure_started()
        return ActionLogSummary.from_record(await self._store.read(record_id))

    async def list_entries(
        self,
        time_range: TimeRange | None = None,
        category: LogType | None = None,
    ) -> list[ActionLogSummary]:
        """Summaries, newest first, optionally of one category. Never includes content."""
        self._ensure_started()
        if category is not None:
            category = LogType(category)
        return await self._store.list_summaries(time_range, newest_first=True, category=category)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update_content(self, record_id: str, content: str) -> ActionLogSummary:
        self._ensure_started()
        text = normalize_content(content)

        def change(record: StoredRecord, sealer: _Sealer) -> StoredRecord:
            return replace(
                record,
                content_ciphertext=sealer.seal(text),
                feedback_ciphertext=sealer.carry(record.feedback_ciphertext),
                key_id=sealer.active_key.key_id,
            )

        updated = await self._update_sealed(record_id, change)
        logger.info("entry_content_updated", record_id=record_id)
        return ActionLogSummary.from_record(updated)

    async def attach_feedback(
        self,
        record_id: str,
        feedback: str,
        prevented_calories: int | None = None,
    ) -> ActionLogSummary:
        """
        Encrypt and attach AI feedback to an entry.

        Raises:
            RecordNotFound: The entry was deleted meanwhile
        """
        self._ensure_started()
        if not isinstance(feedback, str) or not feedback.strip():
            raise ValidationError("Feedback must not be empty")
        calories = validate_calories(prevented_calories)

        def change(record: StoredRecord, sealer: _Sealer) -> StoredRecord:
            return replace(
                record,
                content_ciphertext=sealer.carry(record.content_ciphertext),
                feedback_ciphertext=sealer.seal(feedback),
                prevented_calories=calories,
                key_id=sealer.active_key.key_id,
            )

        updated = await self._update_sealed(record_id, change)
        logger.info("entry_feedback_attached", record_id=record_id)
        return ActionLogSummary.from_record(updated)

    async def request_feedback(self, record_id: str) -> ActionLogSummary:
        """
        Generate feedback for a stored entry and attach it.

        Raises:
            FeedbackGenerationError: The collaborator failed; the entry is
                left without feedback and the call may be retried
        """
        content = await self.get_secure_content(record_id)
        try:
            result = await self._feedback.generate(content)
        except Exception as e:
            logger.warning("feedback_generation_failed", record_id=record_id, error=type(e).__name__)
            raise FeedbackGenerationError("Feedback generation failed") from e

        return await self.attach_feedback(record_id, result.feedback, result.prevented_calories)

    async def update_category(self, record_id: str, category: LogType) -> ActionLogSummary:
        self._ensure_started()
        category = LogType(category)
        updated = await self._store.update(
            record_id, lambda r: replace(r, category=category), updated_at=self._clock(),
        )
        return ActionLogSummary.from_record(updated)

    async def add_emotion_tag(self, record_id: str, tag: str) -> ActionLogSummary:
        """Append a tag unless present. Raises ValidationError past the limit."""
        self._ensure_started()
        label = normalize_tag(tag)

        def add(record: StoredRecord) -> StoredRecord:
            if label in record.emotion_tags:
                return record
            if len(record.emotion_tags) >= MAX_EMOTION_TAGS:
                raise ValidationError(f"At most {MAX_EMOTION_TAGS} emotion tags per entry")
            return replace(record, emotion_tags=(*record.emotion_tags, label))

        updated = await self._store.update(record_id, add, updated_at=self._clock())
        return ActionLogSummary.from_record(updated)

    async def remove_emotion_tag(self, record_id: str, tag: str) -> ActionLogSummary:
        self._ensure_started()
        label = tag.strip()
        updated = await self._store.update(
            record_id,
            lambda r: replace(r, emotion_tags=tuple(t for t in r.emotion_tags if t != label)),
            updated_at=self._clock(),
        )
        return ActionLogSummary.from_record(updated)

    async def _update_sealed(
        self,
        record_id: str,
        change: Callable[[StoredRecord, _Sealer], StoredRecord],
    ) -> StoredRecord:
        """
        Apply an update that writes ciphertext.

        Keys are fetched before the store transaction because the mutator
        runs synchronously inside it. If migration re-keys the record in
        between, the attempt is repeated with fresh keys.
        """
        for _ in range(self.MAX_SEAL_ATTEMPTS):
            current = await self._store.read(record_id)
            active = await self._keys.get_active_key()
            handles = {active.key_id: active}
            if current.key_id != active.key_id:
                handles[current.key_id] = await self._keys.get_key(current.key_id)

            def mutate(record: StoredRecord) -> StoredRecord:
                record_key = handles.get(record.key_id)
                if record_key is None:
                    raise _KeyMoved(record.id)
                return change(record, _Sealer(self._crypto, record_key, active))

            try:
                return await self._store.update(record_id, mutate, updated_at=self._clock())
            except _KeyMoved:
                logger.debug("entry_update_key_moved", record_id=record_id)

        raise StorageFailure("Entry was re-keyed repeatedly during the update")

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete_entry(self, record_id: str) -> None:
        """Hard delete. Raises RecordNotFound if already gone."""
        self._ensure_started()
        await self._store.delete(record_id)
        logger.info("entry_deleted", record_id=record_id)

    async def delete_entries(self, record_ids: Iterable[str]) -> list[str]:
        """Delete several entries at once; returns the ids that existed."""
        self._ensure_started()
        deleted = await self._store.delete_many(record_ids)
        logger.info("entries_deleted", count=len(deleted))
        return deleted

    async def purge_older_than(self, days: int, now: datetime | None = None) -> list[str]:
        """Delete entries created more than ``days`` days before now."""
        self._ensure_started()
        if days < 1:
            raise ValidationError("Retention must be at least one day")
        cutoff = (now or self._clock()) - timedelta(days=days)
        deleted = await self._store.delete_older_than(cutoff)
        if deleted:
            logger.info("entries_purged", count=len(deleted), days=days)
        return deleted

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def compute_statistics(self, time_range: TimeRange) -> ActionLogStats:
        """
        Aggregate a window, served from cache when nothing in it changed.

        Concurrent calls for the same window share one decryption pass.
        """
        self._ensure_started()
        return await self._stats.get(time_range)

    async def todays_statistics(self, now: datetime | None = None) -> ActionLogStats:
        moment = now or self._clock()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return await self.compute_statistics(TimeRange.for_day(moment.astimezone(self._tz).date(), self._tz))

    async def all_time_statistics(self) -> ActionLogStats:
        return await self.compute_statistics(TimeRange.all_time())

    async def _compute_statistics(self, time_range: TimeRange) -> ActionLogStats:
        accumulator = StatsAccumulator(self._tz)
        async for record in self._store.list_by_time_range(time_range):
            try:
                # Integrity check only; the plaintext is dropped immediately
                await self._open(record.id, record.content_ciphertext)
            except (AuthenticationFailure, KeyMismatch):
                accumulator.add_unreadable()
                continue
            accumulator.add(record.category, record.prevented_calories, record.created_at)

        today = self._clock().astimezone(self._tz).date()
        return accumulator.build(anchor_day_for(time_range, today, self._tz))

    # -------------------------------------------------------------------------
    # Key rotation
    # -------------------------------------------------------------------------

    async def rotate_key(self) -> RotationState:
        """
        Switch to a fresh key and start re-sealing old records in the background.

        Reads keep working throughout: each ciphertext names its key.
        """
        self._ensure_started()
        new_key = await self._keys.rotate_key()
        logger.info("repository_key_rotated", active_key_id=new_key.key_id)
        self._migrator.schedule()
        return self.rotation_state()

    async def run_key_maintenance(self) -> MaintenanceReport:
        """Drain every retired key now and destroy the drained ones."""
        self._ensure_started()
        return await self._migrator.run()

    async def wait_for_migration(self) -> MaintenanceReport | None:
        self._ensure_started()
        return await self._migrator.wait()

    async def cancel_migration(self) -> None:
        self._ensure_started()
        await self._migrator.cancel()

    def rotation_state(self) -> RotationState:
        self._ensure_started()
        return RotationState(
            active_key_id=self._keys.active_key_id,
            retiring_key_ids=frozenset(self._keys.retired_key_ids),
            migration_status=self._migrator.status,
        )


__all__ = [
    "ActionLogSummary",
    "LogRepository",
    "RepositoryState",
    "RotationState",
    "normalize_content",
    "normalize_tags",
    "shorten",
    "validate_calories",
]
