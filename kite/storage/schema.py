"""
Persisted Schema

Declares the versioned table set, the secondary indexes of each table
and the upgrade step run when a store moves past each version.

DESIGN DECISION: Every table is a JSON document table, so adding a
field never needs DDL. Versions only add tables, add indexes, or run
idempotent data backfills.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from kite.storage.interface import EntityStoreInterface


APP_META_TABLE = "app_meta"
APP_META_ID = "singleton"

ENTITY_TABLES = (
    "accounts",
    "transactions",
    "categories",
    "budgets",
    "rules",
    "subscriptions",
)

# Cleared by reset_data(); app_meta and settings survive a reset
DATA_TABLES = ENTITY_TABLES + ("sync_queue", "audit_log")

# Exported by default
BACKUP_TABLES = ENTITY_TABLES + ("settings",)


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index over one or more document fields."""
    fields: tuple[str, ...]

    def name_for(self, table: str) -> str:
        return f"idx_{table}_{'_'.join(self.fields)}"


@dataclass(frozen=True)
class TableSpec:
    name: str
    indexes: tuple[IndexSpec, ...] = ()


@dataclass(frozen=True)
class SchemaVersion:
    number: int
    description: str
    tables: tuple[TableSpec, ...] = ()
    upgrade: Optional[Callable[[EntityStoreInterface], None]] = field(default=None, compare=False)


def _index(*fields: str) -> IndexSpec:
    return IndexSpec(fields=tuple(fields))


def _backfill_transaction_defaults(store: EntityStoreInterface) -> None:
    """Give pre-v3 transactions the collection fields added in v3."""
    for record in store.scan("transactions"):
        changed = False
        for key, default in (("metadata", {}), ("tags", []), ("is_transfer", False), ("is_recurring", False)):
            if key not in record:
                record[key] = default
                changed = True
        if changed:
            store.put("transactions", record)


SCHEMA_VERSIONS: tuple[SchemaVersion, ...] = (
    SchemaVersion(
        number=1,
        description="Core entity tables",
        tables=(
            TableSpec(APP_META_TABLE),
            TableSpec("accounts", (_index("type"), _index("is_default"))),
            TableSpec("transactions", (_index("account_id"), _index("category_id"), _index("date"))),
            TableSpec("categories", (_index("parent_id"),)),
            TableSpec("budgets", (_index("category_id"), _index("month"))),
            TableSpec("rules", (_index("priority"),)),
            TableSpec("subscriptions", (_index("next_due_date"),)),
        ),
    ),
    SchemaVersion(
        number=2,
        description="Compound indexes for account timelines and budget lookups",
        tables=(
            TableSpec("transactions", (_index("account_id", "date"), _index("merchant"))),
            TableSpec("budgets", (_index("category_id", "month"),)),
        ),
    ),
    SchemaVersion(
        number=3,
        description="Backfill transaction tags, metadata and flags",
        upgrade=_backfill_transaction_defaults,
    ),
    SchemaVersion(
        number=4,
        description="Settings, offline sync queue and audit log",
        tables=(
            TableSpec("settings"),
            TableSpec("sync_queue", (_index("status"), _index("timestamp"))),
            TableSpec("audit_log", (_index("table_name", "record_id"), _index("timestamp"))),
        ),
    ),
)

SCHEMA_VERSION = SCHEMA_VERSIONS[-1].number


def tables_for(version: int) -> dict[str, tuple[IndexSpec, ...]]:
    """Cumulative table -> indexes mapping as of a schema version."""
    tables: dict[str, tuple[IndexSpec, ...]] = {}
    for schema_version in SCHEMA_VERSIONS:
        if schema_version.number > version:
            break
        for table_spec in schema_version.tables:
            tables[table_spec.name] = tables.get(table_spec.name, ()) + table_spec.indexes
    return tables
