"""
Account Repository

Accounts are never soft-deleted: archiving is the reversible path and
hard delete is only allowed for accounts that never owned a transaction.
At most one account is the default.
"""

from decimal import Decimal
from typing import Any, Optional

from kite.models.base import utcnow
from kite.models.entities import Account
from kite.repositories.base import BaseRepository
from kite.repositories.relationships import HasMany
from kite.storage.interface import ConflictError


class AccountRepository(BaseRepository[Account]):
    model = Account
    table = "accounts"
    soft_delete = False
    relationships = {
        "transactions": HasMany(table="transactions", foreign_key="account_id"),
        "subscriptions": HasMany(table="subscriptions", foreign_key="account_id"),
    }

    def _clear_other_defaults(self, keep_id: Optional[str], actor: Optional[str]) -> None:
        for account in self._query({"is_default": True}):
            if account.id != keep_id:
                self._persist_update(account.id, {"is_default": False}, actor)

    def _check_delete(self, entity: Account, hard: bool) -> None:
        owned = self._store.where_equals("transactions", {"account_id": entity.id})
        if owned:
            raise ConflictError(
                f"Account {entity.id} still owns {len(owned)} transactions; archive it instead"
            )

    def _persist_new(
        self,
        payload: dict[str, Any],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Account:
        account = super()._persist_new(payload, actor, correlation_id)
        if account.is_default:
            self._clear_other_defaults(account.id, actor)
        return account

    def _persist_update(
        self,
        record_id: str,
        changes: dict[str, Any],
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> Account:
        account = super()._persist_update(record_id, changes, actor, expected_version, correlation_id)
        if account.is_default:
            self._clear_other_defaults(account.id, actor)
        return account

    async def set_default(self, account_id: str, actor: Optional[str] = None) -> Account:
        """Make one account the default, clearing the flag everywhere else."""
        return await self.update(account_id, {"is_default": True}, actor=actor)

    async def get_default(self) -> Optional[Account]:
        return await self.find_one({"is_default": True})

    async def archive(self, account_id: str, actor: Optional[str] = None) -> Account:
        return await self.update(account_id, {"archived_at": utcnow(), "is_default": False}, actor=actor)

    async def unarchive(self, account_id: str, actor: Optional[str] = None) -> Account:
        return await self.update(account_id, {"archived_at": None}, actor=actor)

    async def get_active(self) -> list[Account]:
        return [a for a in self._query() if a.archived_at is None]

    async def get_total_balance(self) -> Decimal:
        """Sum of stored balances over active accounts."""
        return sum((a.balance for a in await self.get_active()), Decimal("0"))

    async def adjust_balance(self, account_id: str, delta: Decimal, actor: Optional[str] = None) -> Account:
        current = await self.get(account_id)
        return await self.update(
            account_id,
            {"balance": current.balance + delta},
            actor=actor,
            expected_version=current.version,
        )
