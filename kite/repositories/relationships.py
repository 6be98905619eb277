"""
Typed Relationship Descriptors

Relationships are declared per repository as a mapping of name to one of
four descriptor variants and are resolved on demand by
BaseRepository.load_relationships. Nothing is loaded automatically and
nothing is cached between calls.

Related rows come back as plain documents; soft-deleted rows are skipped.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel

from kite.storage.interface import EntityStoreInterface


def _live(record: Optional[dict[str, Any]]) -> bool:
    return record is not None and not record.get("is_deleted")


def _resolve_path(entity: BaseModel, path: str) -> Any:
    """Follow a dotted path through attributes and dict keys."""
    value: Any = entity
    for part in path.split("."):
        if value is None:
            return None
        value = value.get(part) if isinstance(value, dict) else getattr(value, part, None)
    return value


@dataclass(frozen=True)
class HasOne:
    """Another table holds a foreign key pointing at this entity; at most one row."""
    table: str
    foreign_key: str

    def resolve(self, store: EntityStoreInterface, entity: BaseModel) -> Optional[dict[str, Any]]:
        for record in store.where_equals(self.table, {self.foreign_key: entity.id}):
            if _live(record):
                return record
        return None


@dataclass(frozen=True)
class HasMany:
    """Another table holds a foreign key pointing at this entity."""
    table: str
    foreign_key: str

    def resolve(self, store: EntityStoreInterface, entity: BaseModel) -> list[dict[str, Any]]:
        return [r for r in store.where_equals(self.table, {self.foreign_key: entity.id}) if _live(r)]


@dataclass(frozen=True)
class BelongsTo:
    """This entity holds a foreign key pointing at another table."""
    table: str
    local_key: str

    def resolve(self, store: EntityStoreInterface, entity: BaseModel) -> Optional[dict[str, Any]]:
        related_id = _resolve_path(entity, self.local_key)
        if not related_id:
            return None
        record = store.get(self.table, related_id)
        return record if _live(record) else None


@dataclass(frozen=True)
class BelongsToMany:
    """
    This entity holds a list of ids pointing at another table.

    The list plays the part of a pivot table; `local_ids` may be a dotted
    path into a metadata map. Set include_deleted to follow ids of rows
    that were soft-deleted on purpose (e.g. merged duplicates).
    """
    table: str
    local_ids: str
    include_deleted: bool = False

    def resolve(self, store: EntityStoreInterface, entity: BaseModel) -> list[dict[str, Any]]:
        ids = _resolve_path(entity, self.local_ids) or []
        related = []
        for related_id in ids:
            record = store.get(self.table, related_id)
            if _live(record) or (record is not None and self.include_deleted):
                related.append(record)
        return related


Relationship = Union[HasOne, HasMany, BelongsTo, BelongsToMany]
