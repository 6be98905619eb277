"""
Optimistic Updates

A two-phase protocol for local views: apply a change tentatively, run the
real write, then either confirm (adopt the persisted result) or roll the
local state back to the snapshot taken at apply time.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from kite.storage.interface import NotFoundError


logger = structlog.get_logger(__name__)

S = TypeVar("S")
R = TypeVar("R")


class ChangeState(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class TentativeChange(Generic[S]):
    """
    One optimistic change.

    Args:
        apply: Mutates local state and returns a snapshot of what it replaced.
        rollback: Restores local state from that snapshot.
        confirm: Receives the committed result.
    """

    def __init__(
        self,
        apply: Callable[[], S],
        rollback: Callable[[S], None],
        confirm: Optional[Callable[[Any], None]] = None,
    ):
        self._apply = apply
        self._rollback = rollback
        self._confirm = confirm
        self._snapshot: Optional[S] = None
        self.state = ChangeState.PENDING

    def apply(self) -> None:
        if self.state != ChangeState.PENDING:
            raise RuntimeError(f"Cannot apply a change in state {self.state.value}")
        self._snapshot = self._apply()
        self.state = ChangeState.APPLIED

    def confirm(self, result: Any = None) -> None:
        if self.state != ChangeState.APPLIED:
            raise RuntimeError(f"Cannot confirm a change in state {self.state.value}")
        if self._confirm is not None:
            self._confirm(result)
        self.state = ChangeState.CONFIRMED

    def rollback(self) -> None:
        if self.state != ChangeState.APPLIED:
            raise RuntimeError(f"Cannot roll back a change in state {self.state.value}")
        self._rollback(self._snapshot)
        self.state = ChangeState.ROLLED_BACK

    async def run(self, commit: Callable[[], Awaitable[R]]) -> R:
        """Apply, await the commit, then confirm; roll back and re-raise on failure."""
        self.apply()
        try:
            result = await commit()
        except Exception as e:
            self.rollback()
            logger.info("optimistic_change_rolled_back", error=str(e), error_type=type(e).__name__)
            raise
        self.confirm(result)
        return result


class OptimisticView:
    """
    In-memory view of a repository's entities with optimistic writes.

    Writes show up in `items` immediately and are reverted if the
    repository rejects them (validation, version conflict, ...).
    """

    def __init__(self, repository: Any):
        self._repository = repository
        self.items: dict[str, Any] = {}

    async def refresh(self, options: Any = None) -> None:
        entities = await self._repository.find_all(options)
        self.items = {entity.id: entity for entity in entities}

    def _current(self, record_id: str) -> Any:
        if record_id not in self.items:
            raise NotFoundError(self._repository.table, record_id)
        return self.items[record_id]

    def _swap(self, record_id: str, value: Any) -> Any:
        previous = self.items.get(record_id)
        if value is None:
            self.items.pop(record_id, None)
        else:
            self.items[record_id] = value
        return previous

    def _restore(self, record_id: str, previous: Any) -> None:
        if previous is None:
            self.items.pop(record_id, None)
        else:
            self.items[record_id] = previous

    async def update(self, record_id: str, patch: dict[str, Any], actor: Optional[str] = None) -> Any:
        current = self._current(record_id)
        tentative = current.model_copy(update=patch)
        change = TentativeChange(
            apply=lambda: self._swap(record_id, tentative),
            rollback=lambda previous: self._restore(record_id, previous),
            confirm=lambda saved: self._swap(record_id, saved),
        )
        return await change.run(
            lambda: self._repository.update(
                record_id, patch, actor=actor, expected_version=current.version
            )
        )

    async def delete(self, record_id: str, actor: Optional[str] = None) -> None:
        self._current(record_id)
        change = TentativeChange(
            apply=lambda: self._swap(record_id, None),
            rollback=lambda previous: self._restore(record_id, previous),
        )
        await change.run(lambda: self._repository.delete(record_id, actor=actor))
