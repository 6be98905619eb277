"""
Offline Write Queue

While disconnected, repositories capture every committed write as a
SyncQueueItem (operation, table, payload, timestamp) in the sync_queue
table, inside the same atomic unit as the write itself. When connectivity
returns the queue is drained in FIFO order through an injected processor.

Each item is retried with exponential backoff up to `max_attempts`; after
that it is marked failed and the drain moves on to the next item.
"""

from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from kite.config.settings import SyncSettings
from kite.models.sync import (
    DrainResult,
    SyncOperation,
    SyncQueueItem,
    SyncStatus,
)
from kite.storage.interface import EntityStoreInterface, StorageError


logger = structlog.get_logger(__name__)

QUEUE_TABLE = "sync_queue"

SyncProcessor = Callable[[SyncQueueItem], Awaitable[Any]]


class OfflineQueue:
    """FIFO queue of writes made while offline."""

    def __init__(
        self,
        store: EntityStoreInterface,
        settings: Optional[SyncSettings] = None,
        processor: Optional[SyncProcessor] = None,
        online: bool = True,
    ):
        self._store = store
        self._settings = settings or SyncSettings()
        self._processor = processor
        self._online = online
        self._sequence = 0

    @property
    def is_online(self) -> bool:
        return self._online

    def set_processor(self, processor: SyncProcessor) -> None:
        self._processor = processor

    async def set_online(self, online: bool) -> Optional[DrainResult]:
        """
        Update connectivity. Going from offline to online drains the queue
        when a processor is configured.
        """
        was_online = self._online
        self._online = online
        logger.info("sync_connectivity_changed", online=online)
        if online and not was_online and self._processor is not None:
            return await self.drain()
        return None

    def capture(
        self,
        operation: SyncOperation,
        table_name: str,
        payload: dict[str, Any],
    ) -> Optional[SyncQueueItem]:
        """Queue a write if offline. Returns the queued item, or None when online."""
        if self._online:
            return None
        self._sequence += 1
        item = SyncQueueItem(
            operation=operation,
            table_name=table_name,
            payload=payload,
            sequence=self._sequence,
        )
        self._store.insert(QUEUE_TABLE, item.model_dump(mode="json"))
        logger.debug("sync_item_queued", item_id=item.id, operation=operation.value, table=table_name)
        return item

    def _items(self, status: SyncStatus) -> list[SyncQueueItem]:
        items = [
            SyncQueueItem.model_validate(record)
            for record in self._store.where_equals(QUEUE_TABLE, {"status": status.value})
        ]
        items.sort(key=lambda item: (item.timestamp, item.sequence))
        return items

    def pending(self) -> list[SyncQueueItem]:
        return self._items(SyncStatus.PENDING)

    def failed(self) -> list[SyncQueueItem]:
        return self._items(SyncStatus.FAILED)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.backoff_multiplier,
                max=self._settings.backoff_max,
            ),
            reraise=True,
        )

    async def drain(self) -> DrainResult:
        """
        Replay pending items oldest first.

        Raises:
            StorageError: No processor is configured.
        """
        if self._processor is None:
            raise StorageError("No sync processor configured")

        result = DrainResult()
        for item in self.pending():
            attempts = 0
            try:
                async for attempt in self._retrying():
                    with attempt:
                        attempts += 1
                        await self._processor(item)
            except Exception as e:
                item.retry_count = attempts
                item.status = SyncStatus.FAILED
                item.error = str(e)
                self._store.put(QUEUE_TABLE, item.model_dump(mode="json"))
                result.failed += 1
                logger.error(
                    "sync_item_failed",
                    item_id=item.id,
                    attempts=attempts,
                    error=str(e),
                )
                continue

            self._store.delete(QUEUE_TABLE, item.id)
            result.processed += 1

        result.remaining = len(self.pending())
        logger.info("sync_queue_drained", **result.model_dump())
        return result

    def retry_failed(self) -> int:
        """Move failed items back to pending. Returns how many moved."""
        failed = self.failed()
        for item in failed:
            item.status = SyncStatus.PENDING
            item.retry_count = 0
            item.error = None
            self._store.put(QUEUE_TABLE, item.model_dump(mode="json"))
        return len(failed)
