"""
Record change notifications for EatLock.

The store publishes one RecordChange after every committed mutation.
Listeners (the statistics cache, UI surfaces) subscribe explicitly instead
of observing model properties.

Events carry opaque metadata only: record id, kind, creation timestamp.
Never content.

Usage:
    bus = RecordChangeBus()

    # Synchronous listener (runs inline, right after the commit)
    bus.add_listener(lambda change: print(change.record_id, change.kind))

    # Async subscription (bounded queue per subscriber)
    async with bus.subscribe() as changes:
        async for change in changes:
            ...
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

logger = logging.getLogger(__name__)

RecordChangeListener = Callable[["RecordChange"], None]


class ChangeKind(StrEnum):
    """What happened to a record."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REKEYED = "rekeyed"  # re-encrypted under a new key, content unchanged


@dataclass(frozen=True)
class RecordChange:
    """A committed mutation of one record."""

    record_id: str
    kind: ChangeKind
    created_at: datetime

    @property
    def affects_statistics(self) -> bool:
        return self.kind is not ChangeKind.REKEYED


class Subscription:
    """Async iterator over changes delivered to one subscriber."""

    def __init__(self, queue: asyncio.Queue[RecordChange]) -> None:
        self._queue = queue

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> RecordChange:
        return await self._queue.get()

    async def get(self) -> RecordChange:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()


class RecordChangeBus:
    """
    Fan-out of RecordChange events.

    Listener exceptions are logged and never propagate into the write path:
    the mutation is already committed when listeners run.
    """

    DEFAULT_QUEUE_SIZE = 256

    def __init__(self) -> None:
        self._listeners: list[RecordChangeListener] = []
        self._queues: list[asyncio.Queue[RecordChange]] = []

    def add_listener(self, listener: RecordChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: RecordChangeListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    @contextlib.asynccontextmanager
    async def subscribe(self, max_queue: int = DEFAULT_QUEUE_SIZE) -> AsyncIterator[Subscription]:
        """Subscribe for the lifetime of the context."""
        queue: asyncio.Queue[RecordChange] = asyncio.Queue(maxsize=max_queue)
        self._queues.append(queue)
        try:
            yield Subscription(queue)
        finally:
            self._queues.remove(queue)

    def publish(self, change: RecordChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # Intentional catch-all: a listener must not undo a committed write
                logger.exception(
                    "Record change listener failed for record %s (%s)",
                    change.record_id,
                    change.kind.value,
                )

        for queue in list(self._queues):
            try:
                queue.put_nowait(change)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping change notification for slow subscriber (record %s)",
                    change.record_id,
                )


__all__ = [
    "ChangeKind",
    "RecordChange",
    "RecordChangeBus",
    "RecordChangeListener",
    "Subscription",
]
