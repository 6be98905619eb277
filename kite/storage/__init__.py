"""
Storage Package

Provides the abstract entity store interface, the error taxonomy and the
embedded SQLite implementation.
"""

from kite.storage.interface import (
    ConflictError,
    ContentionError,
    EntityStoreInterface,
    ImportFormatError,
    NotFoundError,
    StorageError,
    TransactionTimeoutError,
    ValidationError,
)
from kite.storage.schema import (
    BACKUP_TABLES,
    DATA_TABLES,
    ENTITY_TABLES,
    SCHEMA_VERSION,
    SCHEMA_VERSIONS,
)
from kite.storage.sqlite_store import SQLiteEntityStore

__all__ = [
    # Interface
    "EntityStoreInterface",
    # Exceptions
    "ConflictError",
    "ContentionError",
    "ImportFormatError",
    "NotFoundError",
    "StorageError",
    "TransactionTimeoutError",
    "ValidationError",
    # Schema
    "BACKUP_TABLES",
    "DATA_TABLES",
    "ENTITY_TABLES",
    "SCHEMA_VERSION",
    "SCHEMA_VERSIONS",
    # SQLite implementation
    "SQLiteEntityStore",
]
