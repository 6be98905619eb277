"""
Budget Repository

One budget per (category, month).
"""

from decimal import Decimal
from typing import Optional

from kite.models.entities import Budget
from kite.models.queries import OrderDirection
from kite.repositories.base import BaseRepository
from kite.repositories.relationships import BelongsTo
from kite.repositories.validation import References, UniqueTogether


class BudgetRepository(BaseRepository[Budget]):
    model = Budget
    table = "budgets"
    soft_delete = False
    validation_rules = (
        References("category_id", table="categories", required=True),
        UniqueTogether("month", fields=("category_id", "month")),
    )
    relationships = {
        "category": BelongsTo(table="categories", local_key="category_id"),
    }

    async def get_by_category_and_month(self, category_id: str, month: str) -> Optional[Budget]:
        return await self.find_one({"category_id": category_id, "month": month})

    async def get_by_month(self, month: str) -> list[Budget]:
        return self._query({"month": month})

    async def get_by_category(self, category_id: str) -> list[Budget]:
        """All budgets of a category, oldest month first."""
        return self._order(self._query({"category_id": category_id}), ["month"], OrderDirection.ASC)

    async def get_total_for_month(self, month: str) -> Decimal:
        return sum((b.amount for b in self._query({"month": month})), Decimal("0"))
