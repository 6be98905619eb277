"""
SQLite Entity Store

Embedded implementation of EntityStoreInterface. Each table holds one
JSON document per row:

    CREATE TABLE <table> (id TEXT PRIMARY KEY, data TEXT NOT NULL)

Secondary indexes are expression indexes over json_extract(), so equality
and range queries on indexed fields do not need a full scan.

DESIGN DECISION: One long-lived connection per store object.
An in-memory store only lives as long as its connection, and a single
connection gives each test its own isolated database.
"""

import json
import re
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Union

import structlog

from kite.models.base import utcnow
from kite.storage.interface import (
    ConflictError,
    ContentionError,
    EntityStoreInterface,
    StorageError,
)
from kite.storage.schema import (
    APP_META_ID,
    APP_META_TABLE,
    DATA_TABLES,
    SCHEMA_VERSION,
    SCHEMA_VERSIONS,
    IndexSpec,
    tables_for,
)


logger = structlog.get_logger(__name__)

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _json_path(field: str) -> str:
    if not _FIELD_PATTERN.match(field):
        raise StorageError(f"Invalid field name: {field!r}")
    return f"json_extract(data, '$.{field}')"


def _to_param(value: Any) -> Any:
    """Convert a Python value to what json_extract() returns for its stored form."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _is_locked(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class SQLiteEntityStore(EntityStoreInterface):
    """
    Versioned multi-table document store on top of sqlite3.

    Usage:
        store = SQLiteEntityStore(":memory:")
        with store.transaction():
            store.insert("accounts", {"id": "a1", "name": "Checking"})
    """

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        busy_timeout: float = 5.0,
        target_version: Optional[int] = None,
        app_version: str = "1.0.0",
    ):
        """
        Open (and migrate) a store.

        Args:
            path: Database file, or ":memory:".
            busy_timeout: Seconds SQLite waits on a lock before failing.
            target_version: Schema version to migrate to. Defaults to the
                latest; lower values are used to exercise upgrades.
            app_version: Recorded in app metadata.
        """
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path,
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._app_version = app_version
        self._tables: dict[str, tuple[IndexSpec, ...]] = {}
        self._depth = 0
        self._pending_callbacks: list[list[Callable[[], None]]] = []
        self._version = 0
        self._migrate(target_version or SCHEMA_VERSION)

    # =========================================================================
    # LIFECYCLE & SCHEMA
    # =========================================================================

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteEntityStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def schema_version(self) -> int:
        return self._version

    def table_names(self) -> list[str]:
        return list(self._tables)

    def _create_table(self, table: str, indexes: tuple[IndexSpec, ...]) -> None:
        self._conn.execute(
            f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL)"
        )
        for index in indexes:
            columns = ", ".join(_json_path(f) for f in index.fields)
            self._conn.execute(
                f"CREATE INDEX IF NOT EXISTS {index.name_for(table)} ON {table} ({columns})"
            )
        self._tables[table] = indexes

    def _migrate(self, target: int) -> None:
        """
        Bring the store up to `target`.

        Table and index creation is idempotent; upgrade steps run only for
        versions above the stored one. Every upgrade appends a migration
        name to app metadata.
        """
        self._create_table(APP_META_TABLE, ())
        meta = self.get(APP_META_TABLE, APP_META_ID)
        current = meta["schema_version"] if meta else 0
        if current > target:
            raise StorageError(
                f"Store schema v{current} is newer than supported v{target}"
            )

        with self.transaction():
            for table, indexes in tables_for(target).items():
                self._create_table(table, indexes)

            for version in SCHEMA_VERSIONS:
                if current < version.number <= target and version.upgrade is not None:
                    logger.info("schema_upgrade_step", version=version.number, step=version.description)
                    version.upgrade(self)

            now = utcnow().isoformat()
            if meta is None:
                meta = {
                    "id": APP_META_ID,
                    "schema_version": target,
                    "app_version": self._app_version,
                    "created_at": now,
                    "updated_at": now,
                    "migrations": [f"v{target}-initial-setup"],
                }
                self.put(APP_META_TABLE, meta)
            elif current < target:
                meta["migrations"].append(f"v{current}-to-v{target}")
                meta.update(schema_version=target, app_version=self._app_version, updated_at=now)
                self.put(APP_META_TABLE, meta)

        self._version = target
        logger.info("store_opened", path=self.path, schema_version=target, previous_version=current)

    def app_meta(self) -> dict[str, Any]:
        meta = self.get(APP_META_TABLE, APP_META_ID)
        if meta is None:
            raise StorageError("App metadata missing")
        return meta

    def migration_history(self) -> list[str]:
        return list(self.app_meta().get("migrations", []))

    def reset_data(self) -> str:
        """
        Clear every data table, keeping app metadata and settings.

        Returns the migration name appended to the history.
        """
        name = f"reset-{utcnow().isoformat()}"
        with self.transaction():
            for table in DATA_TABLES:
                if table in self._tables:
                    self.clear(table)
            meta = self.app_meta()
            meta["migrations"].append(name)
            meta["updated_at"] = utcnow().isoformat()
            self.put(APP_META_TABLE, meta)
        logger.warning("store_reset", migration=name)
        return name

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["SQLiteEntityStore"]:
        """
        Atomic unit. The outermost call opens BEGIN IMMEDIATE; nested calls
        open savepoints that roll back independently.
        """
        depth = self._depth
        savepoint = f"sp_{depth}"
        try:
            if depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                raise ContentionError(f"Store is locked: {e}") from e
            raise StorageError(str(e)) from e

        self._depth += 1
        self._pending_callbacks.append([])
        try:
            yield self
        except BaseException:
            self._depth -= 1
            self._pending_callbacks.pop()
            if depth == 0:
                self._conn.execute("ROLLBACK")
            else:
                self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise

        self._depth -= 1
        callbacks = self._pending_callbacks.pop()
        if depth > 0:
            self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            self._pending_callbacks[-1].extend(callbacks)
            return

        try:
            self._conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._conn.execute("ROLLBACK")
            if _is_locked(e):
                raise ContentionError(f"Commit failed, store is locked: {e}") from e
            raise StorageError(str(e)) from e

        for callback in callbacks:
            callback()

    def after_commit(self, callback: Callable[[], None]) -> None:
        if self._depth == 0:
            callback()
        else:
            self._pending_callbacks[-1].append(callback)

    # =========================================================================
    # DOCUMENT OPERATIONS
    # =========================================================================

    def _check_table(self, table: str) -> str:
        if table not in self._tables:
            raise StorageError(f"Unknown table: {table}")
        return table

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                raise ContentionError(f"Store is locked: {e}") from e
            raise StorageError(str(e)) from e

    @staticmethod
    def _encode(record: dict[str, Any]) -> tuple[str, str]:
        record_id = record.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise StorageError("Records need a non-empty string id")
        return record_id, json.dumps(record, separators=(",", ":"), default=str)

    @staticmethod
    def _decode(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
        return [json.loads(row["data"]) for row in rows]

    def get(self, table: str, record_id: str) -> Optional[dict[str, Any]]:
        row = self._execute(
            f"SELECT data FROM {self._check_table(table)} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def insert(self, table: str, record: dict[str, Any]) -> None:
        record_id, data = self._encode(record)
        try:
            self._execute(
                f"INSERT INTO {self._check_table(table)} (id, data) VALUES (?, ?)",
                (record_id, data),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Record {record_id} already exists in {table}") from e

    def put(self, table: str, record: dict[str, Any]) -> None:
        record_id, data = self._encode(record)
        self._execute(
            f"INSERT INTO {self._check_table(table)} (id, data) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            (record_id, data),
        )

    def bulk_put(self, table: str, records: Iterable[dict[str, Any]]) -> int:
        count = 0
        with self.transaction():
            for record in records:
                self.put(table, record)
                count += 1
        return count

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._execute(
            f"DELETE FROM {self._check_table(table)} WHERE id = ?", (record_id,)
        )
        return cursor.rowcount > 0

    def scan(self, table: str) -> list[dict[str, Any]]:
        rows = self._execute(f"SELECT data FROM {self._check_table(table)} ORDER BY rowid")
        return self._decode(rows)

    def where_equals(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        clauses = []
        params = []
        for field, value in filters.items():
            if value is None:
                clauses.append(f"{_json_path(field)} IS NULL")
            else:
                clauses.append(f"{_json_path(field)} = ?")
                params.append(_to_param(value))
        where = " AND ".join(clauses) or "1 = 1"
        rows = self._execute(
            f"SELECT data FROM {self._check_table(table)} WHERE {where} ORDER BY rowid", params
        )
        return self._decode(rows)

    def where_in(self, table: str, field: str, values: Iterable[Any]) -> list[dict[str, Any]]:
        params = [_to_param(v) for v in values]
        if not params:
            return []
        placeholders = ", ".join("?" for _ in params)
        rows = self._execute(
            f"SELECT data FROM {self._check_table(table)} "
            f"WHERE {_json_path(field)} IN ({placeholders}) ORDER BY rowid",
            params,
        )
        return self._decode(rows)

    def where_between(
        self,
        table: str,
        field: str,
        lower: Any = None,
        upper: Any = None,
        include_upper: bool = True,
    ) -> list[dict[str, Any]]:
        path = _json_path(field)
        clauses = [f"{path} IS NOT NULL"]
        params = []
        if lower is not None:
            clauses.append(f"{path} >= ?")
            params.append(_to_param(lower))
        if upper is not None:
            clauses.append(f"{path} {'<=' if include_upper else '<'} ?")
            params.append(_to_param(upper))
        rows = self._execute(
            f"SELECT data FROM {self._check_table(table)} "
            f"WHERE {' AND '.join(clauses)} ORDER BY {path}, rowid",
            params,
        )
        return self._decode(rows)

    def count(self, table: str) -> int:
        row = self._execute(f"SELECT COUNT(*) AS n FROM {self._check_table(table)}").fetchone()
        return row["n"]

    def clear(self, table: str) -> None:
        self._execute(f"DELETE FROM {self._check_table(table)}")

    def indexes(self, table: str) -> list[str]:
        """Names of the secondary indexes SQLite holds for a table."""
        rows = self._execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ? "
            "AND name LIKE 'idx_%' ORDER BY name",
            (self._check_table(table),),
        )
        return [row["name"] for row in rows]
