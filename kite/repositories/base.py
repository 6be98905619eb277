"""
Base Repository

Generic validated, audited, optimistically locked CRUD over one table of
the entity store.

Every mutation:
1. Runs inside an atomic unit owned by the TransactionManager
2. Validates the full record (pydantic shape + the repository's rules)
3. Maintains the audit envelope (version, created/updated/deleted markers)
4. Appends an audit event in the same unit
5. Publishes a ChangeEvent once the unit commits

DESIGN DECISION: The store API is synchronous (embedded SQLite) while the
repository API is async. Atomic units, retries and timeouts are async
concerns handled by the manager; record access itself never blocks.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from math import ceil
from typing import (
    Any,
    Callable,
    ClassVar,
    Generic,
    Iterable,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from kite.audit.logger import AuditLogger
from kite.config.settings import CacheSettings, RepositorySettings
from kite.models.audit import AuditEventBuilder
from kite.models.base import (
    ENVELOPE_FIELDS,
    AuditedEntity,
    ValidationIssue,
    issues_from_pydantic,
    new_id,
    utcnow,
)
from kite.models.queries import OrderDirection, PaginatedResult, QueryOptions
from kite.models.sync import SyncOperation
from kite.repositories.relationships import Relationship
from kite.repositories.validation import FieldRule, ValidationContext, run_rules
from kite.storage.interface import (
    ConflictError,
    EntityStoreInterface,
    NotFoundError,
    StorageError,
    ValidationError,
)
from kite.storage.schema import tables_for
from kite.sync.cache import QueryCache, make_cache_key
from kite.sync.events import ChangeNotifier
from kite.sync.manager import TransactionManager
from kite.sync.queue import OfflineQueue


T = TypeVar("T", bound=AuditedEntity)
R = TypeVar("R")

ProgressCallback = Callable[[int, int], None]


@dataclass
class RepositoryContext:
    """Everything a repository needs, passed explicitly at construction."""
    store: EntityStoreInterface
    manager: TransactionManager
    audit: AuditLogger
    sync_queue: Optional[OfflineQueue] = None
    settings: Optional[RepositorySettings] = None
    cache_settings: Optional[CacheSettings] = None

    def __post_init__(self):
        if self.settings is None:
            self.settings = RepositorySettings()
        if self.cache_settings is None:
            self.cache_settings = CacheSettings()

    @property
    def cache(self) -> QueryCache:
        return self.manager.cache

    @property
    def notifier(self) -> ChangeNotifier:
        return self.manager.notifier


def _sort_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class BaseRepository(Generic[T]):
    """
    Generic repository over one table.

    Subclasses declare:
        model: the pydantic entity type
        table: the store table
        soft_delete: whether delete() marks rows instead of removing them
        validation_rules: typed rules checked on every write
        relationships: typed descriptors available to include=
    """

    model: ClassVar[type[AuditedEntity]]
    table: ClassVar[str]
    soft_delete: ClassVar[bool] = False
    validation_rules: ClassVar[tuple[FieldRule, ...]] = ()
    relationships: ClassVar[Mapping[str, Relationship]] = {}

    def __init__(self, ctx: RepositoryContext):
        self._ctx = ctx
        self._store = ctx.store
        self._manager = ctx.manager
        self._audit = ctx.audit
        self._logger = structlog.get_logger(__name__).bind(table=self.table)
        self._indexed_fields = {
            index.fields[0]
            for index in tables_for(self._store.schema_version).get(self.table, ())
            if len(index.fields) == 1
        }

    # =========================================================================
    # CONVERSION & VALIDATION
    # =========================================================================

    def _from_record(self, record: dict[str, Any]) -> T:
        return self.model.model_validate(record)

    def _build(self, data: dict[str, Any]) -> T:
        try:
            return self.model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(issues_from_pydantic(e)) from e

    @staticmethod
    def _coerce_input(data: Union[Mapping[str, Any], BaseModel]) -> dict[str, Any]:
        """Caller input as a dict, without envelope fields."""
        if isinstance(data, BaseModel):
            payload = data.model_dump(exclude_unset=True)
        else:
            payload = dict(data)
        return {
            key: value for key, value in payload.items()
            if key not in ENVELOPE_FIELDS and key != "relations"
        }

    def _validate(self, entity: T) -> None:
        ctx = ValidationContext(store=self._store, table=self.table)
        issues = run_rules(self.validation_rules, entity, ctx)
        issues.extend(self._validate_entity(entity))
        if issues:
            raise ValidationError(issues)

    def _validate_entity(self, entity: T) -> list[ValidationIssue]:
        """Hook for cross-field or cross-row checks a rule tuple can't express."""
        return []

    def _check_delete(self, entity: T, hard: bool) -> None:
        """Hook raising ConflictError when referential constraints forbid a delete."""
        return None

    # =========================================================================
    # READS
    # =========================================================================

    def _load(self, record_id: str, with_deleted: bool = False) -> T:
        record = self._store.get(self.table, record_id)
        if record is None:
            raise NotFoundError(self.table, record_id)
        entity = self._from_record(record)
        if self.soft_delete and entity.is_deleted and not with_deleted:
            raise NotFoundError(
                self.table, record_id, f"Record {record_id} in {self.table} is deleted"
            )
        return entity

    def _query(self, where: Optional[Mapping[str, Any]] = None, with_deleted: bool = False) -> list[T]:
        where = dict(where or {})
        indexed = next(
            (
                field for field, value in where.items()
                if field in self._indexed_fields and isinstance(value, (str, bool))
            ),
            None,
        )
        if indexed is not None:
            records = self._store.where_equals(self.table, {indexed: where[indexed]})
        else:
            records = self._store.scan(self.table)

        entities = [self._from_record(record) for record in records]
        if self.soft_delete and not with_deleted:
            entities = [e for e in entities if not e.is_deleted]
        if where:
            entities = [e for e in entities if self._matches(e, where)]
        return entities

    def _matches(self, entity: T, where: Mapping[str, Any]) -> bool:
        for field, expected in where.items():
            if field not in type(entity).model_fields:
                raise ValidationError.single(field, "unknown_field", f"{self.table} has no field {field}")
            if getattr(entity, field) != expected:
                return False
        return True

    @staticmethod
    def _order(entities: list[T], fields: list[str], direction: OrderDirection) -> list[T]:
        ordered = list(entities)
        reverse = direction == OrderDirection.DESC
        for field in reversed(fields):
            present = [e for e in ordered if getattr(e, field, None) is not None]
            missing = [e for e in ordered if getattr(e, field, None) is None]
            present.sort(key=lambda e: _sort_value(getattr(e, field)), reverse=reverse)
            ordered = present + missing
        return ordered

    async def find_by_id(
        self,
        record_id: str,
        include: Iterable[str] = (),
        with_deleted: bool = False,
    ) -> Optional[T]:
        """
        Get one entity by id.

        Soft-deleted rows are invisible unless with_deleted is set.
        Returns None if the row does not exist or is hidden.
        """
        try:
            entity = self._load(record_id, with_deleted=with_deleted)
        except NotFoundError:
            return None
        include = list(include)
        return self.load_relationships(entity, include) if include else entity

    async def get(self, record_id: str, include: Iterable[str] = ()) -> T:
        """Like find_by_id but raises NotFoundError."""
        entity = await self.find_by_id(record_id, include=include)
        if entity is None:
            raise NotFoundError(self.table, record_id)
        return entity

    async def find_all(self, options: Optional[QueryOptions] = None, **kwargs: Any) -> list[Any]:
        """
        Query the table.

        Accepts a QueryOptions or its fields as keyword arguments. Returns
        entities, projected dicts (select) or groups (group_by).
        """
        options = options or QueryOptions(**kwargs)
        if options.cache and options.having is None:
            key = make_cache_key(self.table, "find_all", options.cache_payload())
            ttl = options.cache_ttl or self._ctx.cache_settings.default_ttl_seconds
            return await self._ctx.cache.get_or_load(key, lambda: self._find_all(options), ttl)
        return await self._find_all(options)

    async def _find_all(self, options: QueryOptions) -> list[Any]:
        entities = self._query(options.where, options.with_deleted)
        if options.having is not None:
            entities = [e for e in entities if options.having(e)]
        entities = self._order(entities, options.order_fields, options.order_direction)

        end = options.offset + options.limit if options.limit is not None else None
        if options.group_by:
            return self._group(entities, options.group_by)[options.offset:end]

        entities = entities[options.offset:end]
        if options.include:
            entities = [self.load_relationships(e, options.include) for e in entities]
        if options.select:
            return self._project(entities, options.select, options.distinct)
        return entities

    @staticmethod
    def _group(entities: list[T], fields: list[str]) -> list[dict[str, Any]]:
        groups: dict[tuple, dict[str, Any]] = {}
        for entity in entities:
            key = tuple(_sort_value(getattr(entity, f, None)) for f in fields)
            group = groups.setdefault(key, {"key": dict(zip(fields, key)), "items": []})
            group["items"].append(entity)
        for group in groups.values():
            group["count"] = len(group["items"])
        return list(groups.values())

    @staticmethod
    def _project(entities: list[T], fields: list[str], distinct: bool) -> list[dict[str, Any]]:
        rows = []
        seen = set()
        for entity in entities:
            dumped = entity.model_dump(mode="json")
            row = {"id": entity.id}
            row.update({f: dumped.get(f) for f in fields if f != "id"})
            if distinct:
                marker = json.dumps({k: v for k, v in row.items() if k != "id"}, sort_keys=True, default=str)
                if marker in seen:
                    continue
                seen.add(marker)
            rows.append(row)
        return rows

    async def find_one(self, where: Mapping[str, Any]) -> Optional[T]:
        matches = self._query(where)
        return matches[0] if matches else None

    async def count(self, where: Optional[Mapping[str, Any]] = None, with_deleted: bool = False) -> int:
        return len(self._query(where, with_deleted))

    async def exists(self, where: Mapping[str, Any]) -> bool:
        return bool(self._query(where))

    async def find_paginated(
        self,
        page: int = 1,
        page_size: int = 20,
        options: Optional[QueryOptions] = None,
    ) -> PaginatedResult:
        if page < 1 or page_size < 1:
            raise ValidationError.single("page", "min", "page and page_size must be at least 1")
        options = (options or QueryOptions()).model_copy(update={"limit": None, "offset": 0})
        items = await self._find_all(options)
        total = len(items)
        total_pages = ceil(total / page_size)
        start = (page - 1) * page_size
        return PaginatedResult(
            items=items[start:start + page_size],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================

    def load_relationships(self, entity: T, include: Iterable[str]) -> T:
        """Resolve the named relationships into a copy's `relations` map."""
        relations = dict(entity.relations)
        for name in include:
            descriptor = self.relationships.get(name)
            if descriptor is None:
                raise ValidationError.single(
                    name, "unknown_relationship", f"{self.table} has no relationship {name}"
                )
            relations[name] = descriptor.resolve(self._store, entity)
        return entity.model_copy(update={"relations": relations})

    # =========================================================================
    # WRITES (synchronous, called inside an atomic unit)
    # =========================================================================

    async def _atomic(self, fn: Callable[[], R]) -> R:
        async def operation() -> R:
            return fn()
        return await self._manager.execute(operation)

    def _committed(self, operation: SyncOperation, action: str, record: dict[str, Any]) -> None:
        if self._ctx.sync_queue is not None:
            self._ctx.sync_queue.capture(operation, self.table, record)
        notifier = self._ctx.notifier
        table = self.table
        self._store.after_commit(
            lambda: notifier.publish(table, action, record.get("id"), record)
        )

    def _persist_new(
        self,
        payload: dict[str, Any],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> T:
        entity = self._build({
            **payload,
            "id": new_id(),
            "created_at": utcnow(),
            "created_by": actor,
            "version": 1,
            "is_deleted": False,
        })
        self._validate(entity)
        record = entity.to_record()
        self._store.insert(self.table, record)
        self._audit.record(AuditEventBuilder.created(self.table, record, actor, correlation_id))
        self._committed(SyncOperation.CREATE, "create", record)
        return entity

    def _persist_update(
        self,
        record_id: str,
        changes: dict[str, Any],
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> T:
        current = self._load(record_id)
        if expected_version is not None and current.version != expected_version:
            raise ConflictError(
                f"Version mismatch on {self.table} {record_id}: "
                f"expected {expected_version}, found {current.version}",
                expected_version=expected_version,
                actual_version=current.version,
            )

        before = current.to_record()
        data = current.model_dump()
        data.update(changes)
        data.update(updated_at=utcnow(), updated_by=actor, version=current.version + 1)
        entity = self._build(data)
        self._validate(entity)

        after = entity.to_record()
        self._store.put(self.table, after)
        self._audit.record(AuditEventBuilder.updated(self.table, before, after, actor, correlation_id))
        self._committed(SyncOperation.UPDATE, "update", after)
        return entity

    def _persist_delete(
        self,
        record_id: str,
        actor: Optional[str] = None,
        force: bool = False,
        correlation_id: Optional[str] = None,
    ) -> None:
        current = self._load(record_id, with_deleted=force)
        hard = force or not self.soft_delete
        self._check_delete(current, hard)
        before = current.to_record()

        if hard:
            self._store.delete(self.table, record_id)
            self._audit.record(AuditEventBuilder.deleted(self.table, before, False, actor, correlation_id))
            self._committed(SyncOperation.DELETE, "delete", before)
            return

        deleted = current.model_copy(update={
            "is_deleted": True,
            "deleted_at": utcnow(),
            "deleted_by": actor,
            "version": current.version + 1,
        })
        record = deleted.to_record()
        self._store.put(self.table, record)
        self._audit.record(AuditEventBuilder.deleted(self.table, before, True, actor, correlation_id))
        self._committed(SyncOperation.UPDATE, "soft_delete", record)

    # =========================================================================
    # PUBLIC MUTATIONS
    # =========================================================================

    async def create(self, data: Union[Mapping[str, Any], BaseModel], actor: Optional[str] = None) -> T:
        """
        Validate and persist a new entity.

        Raises:
            ValidationError: The input fails shape or rule validation.
        """
        payload = self._coerce_input(data)
        entity = await self._atomic(lambda: self._persist_new(payload, actor))
        self._logger.info("record_created", record_id=entity.id, actor=actor)
        return entity

    async def update(
        self,
        record_id: str,
        patch: Union[Mapping[str, Any], BaseModel],
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> T:
        """
        Apply a partial update with optimistic locking.

        Raises:
            NotFoundError: Missing or soft-deleted row.
            ConflictError: expected_version differs from the stored version.
            ValidationError: The merged record fails validation.
        """
        changes = self._coerce_input(patch)
        entity = await self._atomic(
            lambda: self._persist_update(record_id, changes, actor, expected_version)
        )
        self._logger.info("record_updated", record_id=record_id, version=entity.version, actor=actor)
        return entity

    async def delete(self, record_id: str, actor: Optional[str] = None, force: bool = False) -> None:
        """
        Soft-delete, or hard-delete when the table has no soft delete or
        force is set. A soft-deleted row can still be force-deleted.
        """
        await self._atomic(lambda: self._persist_delete(record_id, actor, force))
        self._logger.info("record_deleted", record_id=record_id, force=force, actor=actor)

    async def restore(self, record_id: str, actor: Optional[str] = None) -> T:
        """
        Undo a soft delete.

        Raises:
            StorageError: The table has no soft delete.
            NotFoundError: The row does not exist.
            ConflictError: The row is not deleted.
        """
        if not self.soft_delete:
            raise StorageError(f"Soft delete is not enabled for {self.table}")

        def _restore() -> T:
            current = self._load(record_id, with_deleted=True)
            if not current.is_deleted:
                raise ConflictError(f"Record {record_id} in {self.table} is not deleted")
            restored = current.model_copy(update={
                "is_deleted": False,
                "deleted_at": None,
                "deleted_by": None,
                "updated_at": utcnow(),
                "updated_by": actor,
                "version": current.version + 1,
            })
            self._validate(restored)
            record = restored.to_record()
            self._store.put(self.table, record)
            self._audit.record(AuditEventBuilder.restored(self.table, record, actor))
            self._committed(SyncOperation.UPDATE, "restore", record)
            return restored

        entity = await self._atomic(_restore)
        self._logger.info("record_restored", record_id=record_id, actor=actor)
        return entity

    async def find_or_create(
        self,
        where: Mapping[str, Any],
        defaults: Optional[Mapping[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> tuple[T, bool]:
        """Return (entity, created)."""
        def _find_or_create() -> tuple[T, bool]:
            existing = self._query(where)
            if existing:
                return existing[0], False
            return self._persist_new({**dict(where), **dict(defaults or {})}, actor), True

        return await self._atomic(_find_or_create)

    # =========================================================================
    # BATCH OPERATIONS
    # =========================================================================

    def _chunks(self, items: list[Any]) -> Iterable[list[Any]]:
        size = self._ctx.settings.batch_size
        for start in range(0, len(items), size):
            yield items[start:start + size]

    async def batch_create(
        self,
        items: Iterable[Union[Mapping[str, Any], BaseModel]],
        actor: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[T]:
        """
        Create many entities in fixed-size chunks, each chunk atomic.

        A failing chunk rolls back on its own; earlier chunks stay committed.
        """
        payloads = [self._coerce_input(item) for item in items]
        total = len(payloads)
        created: list[T] = []
        for chunk in self._chunks(payloads):
            created.extend(await self._atomic(
                lambda chunk=chunk: [self._persist_new(p, actor) for p in chunk]
            ))
            if on_progress is not None:
                on_progress(len(created), total)
        self._logger.info("batch_created", count=len(created), actor=actor)
        return created

    async def bulk_update(
        self,
        record_ids: Iterable[str],
        patch: Union[Mapping[str, Any], BaseModel],
        actor: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[T]:
        changes = self._coerce_input(patch)
        ids = list(record_ids)
        updated: list[T] = []
        for chunk in self._chunks(ids):
            updated.extend(await self._atomic(
                lambda chunk=chunk: [self._persist_update(i, changes, actor) for i in chunk]
            ))
            if on_progress is not None:
                on_progress(len(updated), len(ids))
        return updated

    async def bulk_delete(
        self,
        record_ids: Iterable[str],
        actor: Optional[str] = None,
        force: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        ids = list(record_ids)
        processed = 0
        for chunk in self._chunks(ids):
            await self._atomic(
                lambda chunk=chunk: [self._persist_delete(i, actor, force) for i in chunk]
            )
            processed += len(chunk)
            if on_progress is not None:
                on_progress(processed, len(ids))
        return processed

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    async def aggregate(
        self,
        group_by: Union[str, list[str], None] = None,
        sum_fields: Iterable[str] = (),
        avg_fields: Iterable[str] = (),
        min_fields: Iterable[str] = (),
        max_fields: Iterable[str] = (),
        where: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """
        Group a full scan in memory and compute count/sum/avg/min/max.

        Group keys are the group_by values joined with '-'. O(n) over the
        table, not indexed.
        """
        fields = [group_by] if isinstance(group_by, str) else list(group_by or [])
        sum_fields, avg_fields = list(sum_fields), list(avg_fields)
        min_fields, max_fields = list(min_fields), list(max_fields)

        groups: dict[str, list[T]] = {}
        for entity in self._query(where):
            key = "-".join(str(_sort_value(getattr(entity, f, None))) for f in fields) or "all"
            groups.setdefault(key, []).append(entity)

        results = []
        for key, members in groups.items():
            row: dict[str, Any] = {"key": key, "count": len(members)}
            for f in fields:
                row[f] = _sort_value(getattr(members[0], f, None))
            for f in sum_fields:
                row[f"sum_{f}"] = sum((getattr(m, f) or 0 for m in members), Decimal("0"))
            for f in avg_fields:
                values = [getattr(m, f) for m in members if getattr(m, f) is not None]
                row[f"avg_{f}"] = sum(values, Decimal("0")) / len(values) if values else None
            for f in min_fields:
                values = [getattr(m, f) for m in members if getattr(m, f) is not None]
                row[f"min_{f}"] = min(values) if values else None
            for f in max_fields:
                values = [getattr(m, f) for m in members if getattr(m, f) is not None]
                row[f"max_{f}"] = max(values) if values else None
            results.append(row)
        return results
