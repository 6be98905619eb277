"""
Category Repository

Categories form a tree through parent_id. Cycles are rejected on write
and a category with children, transactions or budgets cannot be deleted.
"""

from typing import Optional

from kite.models.base import ValidationIssue
from kite.models.entities import Category
from kite.models.queries import OrderDirection
from kite.repositories.base import BaseRepository
from kite.repositories.relationships import BelongsTo, HasMany
from kite.repositories.validation import References
from kite.storage.interface import ConflictError


class CategoryRepository(BaseRepository[Category]):
    model = Category
    table = "categories"
    soft_delete = False
    validation_rules = (
        References("parent_id", table="categories"),
    )
    relationships = {
        "parent": BelongsTo(table="categories", local_key="parent_id"),
        "children": HasMany(table="categories", foreign_key="parent_id"),
        "transactions": HasMany(table="transactions", foreign_key="category_id"),
        "budgets": HasMany(table="budgets", foreign_key="category_id"),
    }

    def _validate_entity(self, entity: Category) -> list[ValidationIssue]:
        """Walk up the parent chain; reaching the entity again means a cycle."""
        seen = {entity.id}
        parent_id = entity.parent_id
        while parent_id is not None:
            if parent_id in seen:
                return [ValidationIssue(
                    field="parent_id",
                    rule="no_cycle",
                    message=f"Setting parent {entity.parent_id} would create a cycle",
                    value=entity.parent_id,
                )]
            seen.add(parent_id)
            parent = self._store.get(self.table, parent_id)
            parent_id = parent.get("parent_id") if parent else None
        return []

    def _check_delete(self, entity: Category, hard: bool) -> None:
        blockers = []
        children = self._store.where_equals(self.table, {"parent_id": entity.id})
        if children:
            blockers.append(f"{len(children)} child categories")
        transactions = self._store.where_equals("transactions", {"category_id": entity.id})
        if transactions:
            blockers.append(f"{len(transactions)} transactions")
        budgets = self._store.where_equals("budgets", {"category_id": entity.id})
        if budgets:
            blockers.append(f"{len(budgets)} budgets")
        if blockers:
            raise ConflictError(
                f"Category {entity.id} is still referenced by {', '.join(blockers)}"
            )

    async def get_top_level(self) -> list[Category]:
        return self._order(self._query({"parent_id": None}), ["name"], OrderDirection.ASC)

    async def get_children(self, parent_id: str) -> list[Category]:
        return self._order(self._query({"parent_id": parent_id}), ["name"], OrderDirection.ASC)

    async def get_path(self, category_id: str) -> list[Category]:
        """Root-first chain of ancestors ending at the category itself."""
        path = []
        current: Optional[Category] = self._load(category_id)
        while current is not None:
            path.append(current)
            current = self._load(current.parent_id) if current.parent_id else None
        return list(reversed(path))
