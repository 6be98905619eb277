"""
Change Notification Channel

Repositories publish a ChangeEvent after every committed mutation.
Consumers either register synchronous handlers (cache invalidation,
derived views) or open an async stream backed by an asyncio.Queue.
"""

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, NamedTuple

import structlog

from kite.models.base import utcnow


logger = structlog.get_logger(__name__)

ALL_TABLES = "*"


class ChangeEvent(NamedTuple):
    table: str
    action: str
    record_id: Optional[str]
    record: Optional[dict[str, Any]]
    version: Optional[int]
    ts: datetime


Handler = Callable[[ChangeEvent], None]


class ChangeStream:
    """Async iterator over events for one table (or all tables)."""

    def __init__(self, notifier: "ChangeNotifier", table: str):
        self._notifier = notifier
        self._table = table
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._unsubscribe = notifier.subscribe(table, self._queue.put_nowait)

    async def get(self, timeout: Optional[float] = None) -> ChangeEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._unsubscribe()

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self._queue.get()


class ChangeNotifier:
    """
    Publish/subscribe bus for committed table changes.

    Handlers run synchronously in publish order. A failing handler is
    logged and does not stop delivery to the others, since the change it
    reports has already committed.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, table: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._subscribers.setdefault(table, []).append(handler)
        return lambda: self.unsubscribe(table, handler)

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        return self.subscribe(ALL_TABLES, handler)

    def unsubscribe(self, table: str, handler: Handler) -> None:
        if handler in self._subscribers.get(table, []):
            self._subscribers[table].remove(handler)

    def listen(self, table: str = ALL_TABLES) -> ChangeStream:
        return ChangeStream(self, table)

    def publish(
        self,
        table: str,
        action: str,
        record_id: Optional[str] = None,
        record: Optional[dict[str, Any]] = None,
    ) -> ChangeEvent:
        event = ChangeEvent(
            table=table,
            action=action,
            record_id=record_id,
            record=record,
            version=record.get("version") if record else None,
            ts=utcnow(),
        )
        handlers = list(self._subscribers.get(table, [])) + list(self._subscribers.get(ALL_TABLES, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("change_handler_failed", table=table, action=action, record_id=record_id)
        return event
