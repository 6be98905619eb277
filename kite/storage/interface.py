"""
Storage Interface Definitions

Abstract interface for the embedded entity store plus the error taxonomy
shared by every layer above it.

DESIGN DECISION: The store works with plain JSON documents keyed by
string ids. Typed models live one layer up, in repositories, so the
store can be swapped (SQLite today) without touching domain code.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Callable, Iterable, Optional

from kite.models.base import ValidationIssue


# =============================================================================
# ERRORS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage and repository operations."""
    pass


class ValidationError(StorageError):
    """
    Raised before persistence when a record fails validation.

    Carries every issue found, not just the first.
    """

    def __init__(self, issues: list[ValidationIssue], message: Optional[str] = None):
        self.issues = issues
        if message is None:
            message = "; ".join(f"{i.field}: {i.message}" for i in issues) or "Validation failed"
        super().__init__(message)

    @classmethod
    def single(cls, field: str, rule: str, message: str, value: Any = None) -> "ValidationError":
        return cls([ValidationIssue(field=field, rule=rule, message=message, value=value)])

    @property
    def fields(self) -> list[str]:
        return [issue.field for issue in self.issues]


class NotFoundError(StorageError):
    """Raised when a record does not exist or is hidden by soft delete."""

    def __init__(self, table: str, record_id: str, message: Optional[str] = None):
        self.table = table
        self.record_id = record_id
        super().__init__(message or f"Record {record_id} not found in {table}")


class ConflictError(StorageError):
    """
    Raised on optimistic-lock version mismatches and referential conflicts.
    """

    def __init__(
        self,
        message: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message)


class ContentionError(StorageError):
    """Raised when the store is locked by another writer. Retried internally."""
    pass


class TransactionTimeoutError(StorageError):
    """Raised when an atomic unit exceeds its configured timeout."""
    pass


class ImportFormatError(StorageError):
    """Raised for malformed or incompatible backup envelopes."""
    pass


# =============================================================================
# ENTITY STORE INTERFACE
# =============================================================================

class EntityStoreInterface(ABC):
    """
    Abstract interface for a versioned, multi-table document store.

    All implementations must:
    1. Key documents by a string `id` field
    2. Support nested atomic units via transaction()
    3. Defer after_commit callbacks until the outermost unit commits
    """

    @property
    @abstractmethod
    def schema_version(self) -> int:
        """Schema version the store is currently migrated to."""
        pass

    @abstractmethod
    def table_names(self) -> list[str]:
        """All tables known to the current schema."""
        pass

    @abstractmethod
    def get(self, table: str, record_id: str) -> Optional[dict[str, Any]]:
        """Fetch one document by id, or None."""
        pass

    @abstractmethod
    def insert(self, table: str, record: dict[str, Any]) -> None:
        """Insert a new document. Raises ConflictError if the id exists."""
        pass

    @abstractmethod
    def put(self, table: str, record: dict[str, Any]) -> None:
        """Insert or replace a document."""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Physically remove a document. Returns False if it did not exist."""
        pass

    @abstractmethod
    def scan(self, table: str) -> list[dict[str, Any]]:
        """Every document in insertion order."""
        pass

    @abstractmethod
    def where_equals(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Documents whose fields equal all given values."""
        pass

    @abstractmethod
    def where_between(
        self,
        table: str,
        field: str,
        lower: Any = None,
        upper: Any = None,
        include_upper: bool = True,
    ) -> list[dict[str, Any]]:
        """Documents with lower <= field (<= or <) upper, ordered by field."""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear(self, table: str) -> None:
        pass

    @abstractmethod
    def bulk_put(self, table: str, records: Iterable[dict[str, Any]]) -> int:
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Open an atomic unit; nested calls create savepoints."""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        pass

    @abstractmethod
    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run callback once the outermost unit commits (immediately if none is open)."""
        pass
