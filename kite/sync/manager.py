"""
Transaction Manager

Wraps repository operations in atomic units with bounded retry and a
timeout, and wires cache invalidation to the change notification channel.

DESIGN DECISION: Only transient failures are retried.
Contention and timeouts are retried with exponential backoff (tenacity);
validation, not-found and conflict errors are deterministic and surface
on the first attempt.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kite.config.settings import TransactionSettings
from kite.storage.interface import (
    ContentionError,
    EntityStoreInterface,
    TransactionTimeoutError,
)
from kite.sync.cache import QueryCache
from kite.sync.events import ChangeNotifier


logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (ContentionError, TransactionTimeoutError)


class TransactionManager:
    """
    Runs coroutines as atomic units against an entity store.

    Usage:
        result = await manager.execute(lambda: repo._do_update(...))
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        settings: Optional[TransactionSettings] = None,
        cache: Optional[QueryCache] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self._store = store
        self._settings = settings or TransactionSettings()
        self.cache = cache if cache is not None else QueryCache()
        self.notifier = notifier if notifier is not None else ChangeNotifier()
        self.notifier.subscribe_all(lambda event: self.cache.invalidate(event.table))

    @property
    def store(self) -> EntityStoreInterface:
        return self._store

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run `operation` inside one atomic unit.

        A call made while another unit is open joins it as a savepoint and
        is neither retried nor timed separately: the outer unit owns both.

        Raises:
            TransactionTimeoutError: Every attempt exceeded the timeout.
            ContentionError: The store stayed locked for every attempt.
        """
        if self._store.in_transaction:
            with self._store.transaction():
                return await operation()

        attempts = retries if retries is not None else self._settings.max_retries
        timeout = timeout if timeout is not None else self._settings.timeout_seconds

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self._settings.backoff_multiplier,
                max=self._settings.backoff_max,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._run_once(operation, timeout)

    async def _run_once(self, operation: Callable[[], Awaitable[T]], timeout: Optional[float]) -> T:
        async def atomic() -> T:
            with self._store.transaction():
                return await operation()

        if timeout is None:
            return await atomic()
        try:
            return await asyncio.wait_for(atomic(), timeout)
        except asyncio.TimeoutError as e:
            raise TransactionTimeoutError(
                f"Transaction exceeded {timeout}s timeout"
            ) from e

    @staticmethod
    def _log_retry(retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "transaction_retry",
            attempt=retry_state.attempt_number,
            error=str(error),
            error_type=type(error).__name__,
        )
