"""
Key rotation maintenance for EatLock.

Rotation is lazy: KeyManager.rotate_key() only swaps the active key. The
KeyMigrator then re-seals records still under retired keys in bounded
batches on a background task, and destroys each retired key once nothing
references it.

Cancelling a run at any point leaves every record either migrated (tagged
with the new key) or untouched (tagged with the old one). The next run
picks up where the last one stopped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from src.lib.encryption import CryptoEngine
from src.lib.exceptions import KeyInUse
from src.lib.key_manager import KeyManager
from src.services.record_store import SecureRecordStore

logger = structlog.get_logger(__name__)


class MigrationStatus(StrEnum):
    """State of the most recent maintenance run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"  # some records could not be re-sealed
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance run across every retired key."""

    migrated: int = 0
    failed_ids: list[str] = field(default_factory=list)
    destroyed_key_ids: list[str] = field(default_factory=list)
    pending_key_ids: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.pending_key_ids


class KeyMigrator:
    """
    Drains retired keys and destroys them when empty.

    Args:
        keys: Key manager owning the keys
        store: Record store holding the ciphertext
        crypto: Engine used to re-seal each ciphertext field
        batch_size: Records re-sealed per store call
    """

    DEFAULT_BATCH_SIZE = 50

    def __init__(
        self,
        keys: KeyManager,
        store: SecureRecordStore,
        crypto: CryptoEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._keys = keys
        self._store = store
        self._crypto = crypto
        self._batch_size = batch_size
        self._task: asyncio.Task[MaintenanceReport] | None = None
        self._run_lock = asyncio.Lock()
        self.status = MigrationStatus.IDLE
        self.last_report: MaintenanceReport | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> asyncio.Task[MaintenanceReport]:
        """Start a background run unless one is already going."""
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
            self._task.add_done_callback(self._on_task_done)
        return self._task

    async def wait(self) -> MaintenanceReport | None:
        """Wait for the scheduled run, if any, and return its report."""
        task = self._task
        if task is None:
            return self.last_report
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self.last_report
            raise

    async def cancel(self) -> None:
        """Stop the background run. Migrated records stay migrated."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        logger.info("key_migration_cancelled")

    async def run(self) -> MaintenanceReport:
        """
        Drain every retired key once.

        Runs in the caller's task; concurrent calls are serialized.
        """
        async with self._run_lock:
            self.status = MigrationStatus.RUNNING
            report = MaintenanceReport()
            self.last_report = report
            try:
                for key_id in list(self._keys.retired_key_ids):
                    await self._drain(key_id, report)
            except asyncio.CancelledError:
                self.status = MigrationStatus.CANCELLED
                raise
            except Exception:
                self.status = MigrationStatus.FAILED
                logger.exception("key_migration_failed")
                raise

            self.status = MigrationStatus.PARTIAL if report.failed_ids else MigrationStatus.COMPLETED
            logger.info(
                "key_migration_finished",
                migrated=report.migrated,
                failed=len(report.failed_ids),
                destroyed=len(report.destroyed_key_ids),
                pending=len(report.pending_key_ids),
            )
            return report

    async def _drain(self, key_id: str, report: MaintenanceReport) -> None:
        skip: set[str] = set()
        while True:
            new_key = await self._keys.get_active_key()
            old_key = await self._keys.get_key(key_id)

            def reseal(data: bytes) -> bytes:
                return self._crypto.reencrypt_bytes(data, old_key, new_key)

            batch = await self._store.migrate_records_under_key(
                key_id,
                new_key,
                reseal,
                batch_size=self._batch_size,
                skip_ids=skip,
            )
            report.migrated += batch.migrated
            skip.update(batch.failed_ids)

            if batch.remaining == 0:
                break
            if not batch.made_progress and not batch.failed_ids:
                # Only previously failed records are left
                break
            await asyncio.sleep(0)

        if skip:
            report.failed_ids.extend(sorted(skip))
            report.pending_key_ids.append(key_id)
            logger.warning("key_migration_incomplete", key_id=key_id, failed=len(skip))
            return

        try:
            await self._keys.destroy_retired_key(key_id)
        except KeyInUse as e:
            # A record landed under the key after the last batch
            logger.info("key_destroy_deferred", key_id=key_id, references=e.references)
            report.pending_key_ids.append(key_id)
            return
        report.destroyed_key_ids.append(key_id)

    def _on_task_done(self, task: asyncio.Task[MaintenanceReport]) -> None:
        if task.cancelled():
            self.status = MigrationStatus.CANCELLED
            return
        # Retrieve so a failed background run is not reported as unhandled
        task.exception()


__all__ = ["KeyMigrator", "MaintenanceReport", "MigrationStatus"]
