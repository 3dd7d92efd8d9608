"""
Secure record store for EatLock.

Persistence for ActionLog rows. The store only ever handles ciphertext plus
non-sensitive metadata: callers (the LogRepository) encrypt before create()
and decrypt after read(). Nothing in this module can produce plaintext.

Guarantees:
- Every mutation is one transaction on one record (or one batch statement
  for bulk deletes); readers get immutable StoredRecord snapshots and never
  observe a half-applied write
- Writes are serialized through a single async lock (SQLite allows one
  writer); reads never take it
- delete() is a hard delete; SQLite's secure_delete pragma overwrites the
  freed pages and a TRUNCATE checkpoint empties the write-ahead log, so the
  ciphertext is not recoverable from the database files
- A RecordChange is published after every committed mutation

References:
    - src/lib/encryption.py (Ciphertext envelope format)
    - src/services/log_repository.py (the only intended caller)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Collection, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, delete, event, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from src.lib.encryption import KeyHandle
from src.lib.exceptions import (
    CryptoError,
    RecordNotFound,
    StorageFailure,
    ValidationError,
)
from src.models.action_log import ActionLog, LogType, utcnow
from src.models.base import Base
from src.models.time_range import TimeRange
from src.services.events import ChangeKind, RecordChange, RecordChangeBus

logger = structlog.get_logger(__name__)

Reencrypt = Callable[[bytes], bytes]
RecordMutator = Callable[["StoredRecord"], "StoredRecord"]


# =============================================================================
# Value types
# =============================================================================

@dataclass(frozen=True)
class StoredRecord:
    """
    Immutable snapshot of one stored row: ciphertext plus metadata, as-is.

    Ciphertext fields are excluded from repr so a snapshot can be logged
    without dumping payload bytes.
    """

    id: str
    created_at: datetime
    updated_at: datetime
    category: LogType
    content_ciphertext: bytes = field(repr=False)
    feedback_ciphertext: bytes | None = field(repr=False)
    prevented_calories: int | None
    emotion_tags: tuple[str, ...]
    key_id: str

    @property
    def has_feedback(self) -> bool:
        return self.feedback_ciphertext is not None

    @classmethod
    def from_row(cls, row: ActionLog) -> StoredRecord:
        return cls(
            id=str(row.id),
            created_at=row.created_at,  # type: ignore[arg-type]
            updated_at=row.updated_at,  # type: ignore[arg-type]
            category=LogType(row.category),
            content_ciphertext=bytes(row.content_ciphertext),  # type: ignore[arg-type]
            feedback_ciphertext=(
                bytes(row.feedback_ciphertext)  # type: ignore[arg-type]
                if row.feedback_ciphertext is not None else None
            ),
            prevented_calories=row.prevented_calories,  # type: ignore[arg-type]
            emotion_tags=tuple(row.emotion_tags or ()),
            key_id=str(row.key_id),
        )


@dataclass(frozen=True)
class ActionLogSummary:
    """Metadata-only view of a record. Safe to hand to any UI surface."""

    id: str
    created_at: datetime
    updated_at: datetime
    category: LogType
    prevented_calories: int | None
    emotion_tags: tuple[str, ...]
    has_feedback: bool

    @classmethod
    def from_record(cls, record: StoredRecord) -> ActionLogSummary:
        return cls(
            id=record.id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            category=record.category,
            prevented_calories=record.prevented_calories,
            emotion_tags=record.emotion_tags,
            has_feedback=record.has_feedback,
        )


@dataclass(frozen=True)
class MigrationBatch:
    """Outcome of one migrate_records_under_key() call."""

    migrated: int
    failed_ids: tuple[str, ...]
    remaining: int

    @property
    def made_progress(self) -> bool:
        return self.migrated > 0


class RecordRange:
    """
    Lazy, finite, restartable sequence of records in a time window.

    Ascending by created_at. Each ``async for`` re-queries the store page
    by page, so a second iteration reflects writes made since the first.
    """

    def __init__(self, store: SecureRecordStore, time_range: TimeRange, page_size: int) -> None:
        self._store = store
        self.time_range = time_range
        self._page_size = page_size

    def __aiter__(self) -> AsyncIterator[StoredRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StoredRecord]:
        cursor: tuple[datetime, str] | None = None
        while True:
            page = await self._store._fetch_page(self.time_range, cursor, self._page_size)
            for record in page:
                yield record
            if len(page) < self._page_size:
                return
            last = page[-1]
            cursor = (last.created_at, last.id)

    async def to_list(self) -> list[StoredRecord]:
        return [record async for record in self]


# =============================================================================
# Store
# =============================================================================

def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA secure_delete=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class SecureRecordStore:
    """
    CRUD, range queries and key migration over ActionLog rows.

    Args:
        engine: SQLAlchemy async engine
        events: Change bus to publish committed mutations on
        page_size: Rows fetched per page by list_by_time_range()
    """

    DEFAULT_PAGE_SIZE = 100

    def __init__(
        self,
        engine: AsyncEngine,
        events: RecordChangeBus | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, expire_on_commit=False,
        )
        self.events = events or RecordChangeBus()
        self._page_size = page_size
        self._write_lock = asyncio.Lock()
        self._truncate_wal = (
            engine.dialect.name == "sqlite"
            and engine.url.database not in (None, "", ":memory:")
        )

    @classmethod
    def from_url(
        cls,
        url: str,
        events: RecordChangeBus | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> SecureRecordStore:
        """
        Build a store for a database URL.

        SQLite connections get secure_delete, WAL journaling and a busy
        timeout. An in-memory SQLite URL shares one connection so the schema
        survives across sessions; use a file for concurrent workloads.
        """
        kwargs: dict[str, Any] = {}
        is_sqlite = url.startswith("sqlite")
        if is_sqlite and ":memory:" in url:
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}

        engine = create_async_engine(url, **kwargs)
        if is_sqlite:
            event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
        return cls(engine, events=events, page_size=page_size)

    async def create_schema(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageFailure("Could not create schema") from e

    async def dispose(self) -> None:
        await self._engine.dispose()

    # -------------------------------------------------------------------------
    # Create / Read
    # -------------------------------------------------------------------------

    async def create(self, record: StoredRecord) -> str:
        """
        Persist a pre-encrypted record.

        Re-issuing a create with an id that already exists is a no-op that
        returns the id, so a caller may safely retry after an ambiguous failure.

        Raises:
            StorageFailure: The substrate rejected the write
        """
        created = False
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    if await session.get(ActionLog, record.id) is None:
                        session.add(ActionLog(
                            id=record.id,
                            created_at=record.created_at,
                            updated_at=record.updated_at,
                            category=record.category.value,
                            content_ciphertext=record.content_ciphertext,
                            feedback_ciphertext=record.feedback_ciphertext,
                            prevented_calories=record.prevented_calories,
                            emotion_tags=list(record.emotion_tags),
                            key_id=record.key_id,
                        ))
                        created = True
            except SQLAlchemyError as e:
                logger.error("record_create_failed", record_id=record.id, error=type(e).__name__)
                raise StorageFailure("Could not store record") from e

        if created:
            self.events.publish(RecordChange(record.id, ChangeKind.CREATED, record.created_at))
        else:
            logger.info("record_create_replayed", record_id=record.id)
        return record.id

    async def read(self, record_id: str) -> StoredRecord:
        """
        Return the stored ciphertext and metadata. Does not decrypt.

        Raises:
            RecordNotFound: No record with this id
        """
        try:
            async with self._sessions() as session:
                row = await session.get(ActionLog, record_id)
                if row is None:
                    raise RecordNotFound(record_id)
                return StoredRecord.from_row(row)
        except SQLAlchemyError as e:
            raise StorageFailure("Could not read record") from e

    async def read_many(self, record_ids: Iterable[str]) -> dict[str, StoredRecord]:
        """Fetch several records in one query, keyed by id. Unknown ids are absent."""
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return {}
        try:
            async with self._sessions() as session:
                result = await session.execute(select(ActionLog).where(ActionLog.id.in_(ids)))
                return {str(row.id): StoredRecord.from_row(row) for row in result.scalars()}
        except SQLAlchemyError as e:
            raise StorageFailure("Could not read records") from e

    async def exists(self, record_id: str) -> bool:
        try:
            await self.read(record_id)
        except RecordNotFound:
            return False
        return True

    def list_by_time_range(self, time_range: TimeRange) -> RecordRange:
        """Lazy ascending sequence of records with start <= created_at < end."""
        return RecordRange(self, time_range, self._page_size)

    async def fetch_range(self, time_range: TimeRange, newest_first: bool = False) -> list[StoredRecord]:
        """Eagerly fetch every record in a window (list views)."""
        records = await self.list_by_time_range(time_range).to_list()
        if newest_first:
            records.reverse()
        return records

    async def list_summaries(
        self,
        time_range: TimeRange | None = None,
        newest_first: bool = True,
        category: LogType | None = None,
    ) -> list[ActionLogSummary]:
        """Metadata for every record in a window (and category, if given); never loads ciphertext."""
        time_range = time_range or TimeRange.all_time()
        conditions = [
            ActionLog.created_at >= time_range.start,
            ActionLog.created_at < time_range.end,
        ]
        if category is not None:
            conditions.append(ActionLog.category == category.value)
        order = (
            (ActionLog.created_at.desc(), ActionLog.id.desc())
            if newest_first else (ActionLog.created_at, ActionLog.id)
        )
        stmt = (
            select(
                ActionLog.id,
                ActionLog.created_at,
                ActionLog.updated_at,
                ActionLog.category,
                ActionLog.prevented_calories,
                ActionLog.emotion_tags,
                ActionLog.feedback_ciphertext.is_not(None),
            )
            .where(*conditions)
            .order_by(*order)
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                return [
                    ActionLogSummary(
                        id=str(rid),
                        created_at=created_at,
                        updated_at=updated_at,
                        category=LogType(category),
                        prevented_calories=calories,
                        emotion_tags=tuple(tags or ()),
                        has_feedback=bool(has_feedback),
                    )
                    for rid, created_at, updated_at, category, calories, tags, has_feedback
                    in result.all()
                ]
        except SQLAlchemyError as e:
            raise StorageFailure("Could not list records") from e

    async def _fetch_page(
        self,
        time_range: TimeRange,
        cursor: tuple[datetime, str] | None,
        limit: int,
    ) -> list[StoredRecord]:
        conditions = [
            ActionLog.created_at >= time_range.start,
            ActionLog.created_at < time_range.end,
        ]
        if cursor is not None:
            last_created, last_id = cursor
            conditions.append(or_(
                ActionLog.created_at > last_created,
                and_(ActionLog.created_at == last_created, ActionLog.id > last_id),
            ))

        stmt = (
            select(ActionLog)
            .where(and_(*conditions))
            .order_by(ActionLog.created_at, ActionLog.id)
            .limit(limit)
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                return [StoredRecord.from_row(row) for row in result.scalars()]
        except SQLAlchemyError as e:
            raise StorageFailure("Could not query records") from e

    # -------------------------------------------------------------------------
    # Update / Delete
    # -------------------------------------------------------------------------

    async def update(
        self,
        record_id: str,
        mutator: RecordMutator,
        updated_at: datetime | None = None,
    ) -> StoredRecord:
        """
        Apply mutator to one record atomically.

        The mutator receives the current snapshot and returns the new one.
        Anything it raises aborts the transaction unchanged. updated_at stamps
        the new snapshot; it defaults to the current UTC time.

        Raises:
            RecordNotFound: The record does not exist (e.g. concurrently deleted)
            ValidationError: The mutator tried to change id or created_at
        """
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    row = await session.get(ActionLog, record_id)
                    if row is None:
                        raise RecordNotFound(record_id)

                    current = StoredRecord.from_row(row)
                    updated = mutator(current)
                    if updated.id != current.id or updated.created_at != current.created_at:
                        raise ValidationError("Record id and creation time are immutable")

                    updated = replace(updated, updated_at=updated_at or utcnow())
                    self._apply(row, updated)
            except SQLAlchemyError as e:
                logger.error("record_update_failed", record_id=record_id, error=type(e).__name__)
                raise StorageFailure("Could not update record") from e

        self.events.publish(RecordChange(record_id, ChangeKind.UPDATED, updated.created_at))
        return updated

    async def delete(self, record_id: str) -> None:
        """
        Hard delete. No tombstone is kept.

        Raises:
            RecordNotFound: The record does not exist
        """
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    row = await session.get(ActionLog, record_id)
                    if row is None:
                        raise RecordNotFound(record_id)
                    created_at = row.created_at
                    await session.delete(row)
            except SQLAlchemyError as e:
                logger.error("record_delete_failed", record_id=record_id, error=type(e).__name__)
                raise StorageFailure("Could not delete record") from e
            try:
                await self._checkpoint()
            finally:
                self.events.publish(RecordChange(record_id, ChangeKind.DELETED, created_at))  # type: ignore[arg-type]

    async def delete_many(self, record_ids: Iterable[str]) -> list[str]:
        """Delete several records in one transaction. Unknown ids are ignored."""
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        return await self._delete_where(ActionLog.id.in_(ids))

    async def delete_older_than(self, cutoff: datetime) -> list[str]:
        """Delete every record created before cutoff; returns the deleted ids."""
        return await self._delete_where(ActionLog.created_at < cutoff)

    async def _delete_where(self, condition: Any) -> list[str]:
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    result = await session.execute(
                        select(ActionLog.id, ActionLog.created_at).where(condition)
                    )
                    doomed = [(str(rid), created_at) for rid, created_at in result.all()]
                    if doomed:
                        await session.execute(
                            delete(ActionLog).where(ActionLog.id.in_([rid for rid, _ in doomed]))
                        )
            except SQLAlchemyError as e:
                logger.error("record_bulk_delete_failed", error=type(e).__name__)
                raise StorageFailure("Could not delete records") from e
            try:
                if doomed:
                    await self._checkpoint()
            finally:
                for rid, created_at in doomed:
                    self.events.publish(RecordChange(rid, ChangeKind.DELETED, created_at))
        return [rid for rid, _ in doomed]

    async def _checkpoint(self) -> None:
        """
        Copy the write-ahead log back into the database file and truncate it.

        With WAL journaling a deleted row still sits in the -wal file until a
        checkpoint; secure_delete only scrubs the main file. Runs under the
        write lock so no new frame can land between the delete and the
        truncation.
        """
        if not self._truncate_wal:
            return
        try:
            async with self._engine.connect() as conn:
                result = await conn.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)")
                busy = result.scalar()
        except SQLAlchemyError as e:
            logger.error("wal_checkpoint_failed", error=type(e).__name__)
            raise StorageFailure("Deleted records could not be flushed from the journal") from e
        if busy:
            logger.warning("wal_checkpoint_busy")

    @staticmethod
    def _apply(row: ActionLog, record: StoredRecord) -> None:
        row.category = record.category.value  # type: ignore[assignment]
        row.content_ciphertext = record.content_ciphertext  # type: ignore[assignment]
        row.feedback_ciphertext = record.feedback_ciphertext  # type: ignore[assignment]
        row.prevented_calories = record.prevented_calories  # type: ignore[assignment]
        row.emotion_tags = list(record.emotion_tags)  # type: ignore[assignment]
        row.key_id = record.key_id  # type: ignore[assignment]
        row.updated_at = record.updated_at  # type: ignore[assignment]

    # -------------------------------------------------------------------------
    # Key migration
    # -------------------------------------------------------------------------

    async def count_records_under_key(self, key_id: str) -> int:
        """How many records are still sealed under key_id."""
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    select(func.count()).select_from(ActionLog).where(ActionLog.key_id == key_id)
                )
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise StorageFailure("Could not count records") from e

    async def referenced_key_ids(self) -> set[str]:
        """Every key id that at least one record is sealed under."""
        try:
            async with self._sessions() as session:
                result = await session.execute(select(ActionLog.key_id).distinct())
                return {str(key_id) for key_id in result.scalars()}
        except SQLAlchemyError as e:
            raise StorageFailure("Could not list key references") from e

    async def migrate_records_under_key(
        self,
        old_key_id: str,
        new_key: KeyHandle,
        reencrypt_fn: Reencrypt,
        batch_size: int = 50,
        skip_ids: Collection[str] = (),
    ) -> MigrationBatch:
        """
        Re-seal one bounded batch of records from old_key_id to new_key.

        Each record is re-encrypted in its own transaction, so an interrupted
        batch leaves every record either fully migrated or still tagged with
        old_key_id. Selection is by key-id tag, which makes the call
        idempotent: re-running it only touches unmigrated records.

        Records whose ciphertext fails to re-encrypt are logged by id and
        reported in ``failed_ids``; pass them back as ``skip_ids`` to move on
        to the rest of the records within the same maintenance pass.

        Args:
            old_key_id: Key being drained
            new_key: Active key to seal under
            reencrypt_fn: Maps an envelope under old_key_id to one under new_key
            batch_size: Maximum records handled by this call
            skip_ids: Record ids to leave alone in this call
        """
        stmt = select(ActionLog.id).where(ActionLog.key_id == old_key_id)
        if skip_ids:
            stmt = stmt.where(ActionLog.id.not_in(list(skip_ids)))
        stmt = stmt.order_by(ActionLog.created_at, ActionLog.id).limit(batch_size)

        try:
            async with self._sessions() as session:
                candidate_ids = [str(rid) for rid in (await session.execute(stmt)).scalars()]
        except SQLAlchemyError as e:
            raise StorageFailure("Could not select records for migration") from e

        migrated = 0
        failed: list[str] = []
        for record_id in candidate_ids:
            try:
                if await self._rekey_one(record_id, old_key_id, new_key.key_id, reencrypt_fn):
                    migrated += 1
            except (CryptoError, StorageFailure) as e:
                logger.warning(
                    "migration_record_failed",
                    record_id=record_id,
                    key_id=old_key_id,
                    error=type(e).__name__,
                )
                failed.append(record_id)

        remaining = await self.count_records_under_key(old_key_id)
        logger.info(
            "migration_batch_done",
            key_id=old_key_id,
            new_key_id=new_key.key_id,
            migrated=migrated,
            failed=len(failed),
            remaining=remaining,
        )
        return MigrationBatch(migrated=migrated, failed_ids=tuple(failed), remaining=remaining)

    async def _rekey_one(
        self,
        record_id: str,
        old_key_id: str,
        new_key_id: str,
        reencrypt_fn: Reencrypt,
    ) -> bool:
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    row = await session.get(ActionLog, record_id)
                    if row is None or row.key_id != old_key_id:
                        return False  # deleted or already migrated

                    row.content_ciphertext = reencrypt_fn(bytes(row.content_ciphertext))  # type: ignore[assignment]
                    if row.feedback_ciphertext is not None:
                        row.feedback_ciphertext = reencrypt_fn(bytes(row.feedback_ciphertext))  # type: ignore[assignment]
                    row.key_id = new_key_id  # type: ignore[assignment]
                    created_at = row.created_at
            except SQLAlchemyError as e:
                raise StorageFailure("Could not migrate record") from e

        self.events.publish(RecordChange(record_id, ChangeKind.REKEYED, created_at))  # type: ignore[arg-type]
        return True


__all__ = [
    "ActionLogSummary",
    "MigrationBatch",
    "RecordMutator",
    "RecordRange",
    "Reencrypt",
    "SecureRecordStore",
    "StoredRecord",
]
