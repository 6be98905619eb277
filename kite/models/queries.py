"""
Query and Result Models

Typed inputs for repository reads (QueryOptions, TransactionFilters) and
the structured results produced by transaction analysis and imports.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kite.models.base import to_naive_utc
from kite.models.entities import Transaction, TransactionType


T = TypeVar("T")


class OrderDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class QueryOptions(BaseModel):
    """
    Options accepted by BaseRepository.find_all.

    `having` is an arbitrary predicate applied to each entity after the
    equality filters. Queries with a predicate are never cached.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    where: dict[str, Any] = Field(default_factory=dict, description="Equality filters")
    order_by: Union[str, list[str], None] = None
    order_direction: OrderDirection = OrderDirection.ASC
    limit: Optional[int] = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    select: Optional[list[str]] = Field(default=None, description="Projection; id is always kept")
    distinct: bool = False
    group_by: Optional[list[str]] = None
    having: Optional[Callable[[Any], bool]] = None
    include: list[str] = Field(default_factory=list, description="Relationships to load")
    with_deleted: bool = False
    cache: bool = False
    cache_ttl: Optional[float] = Field(default=None, gt=0)

    @property
    def order_fields(self) -> list[str]:
        if self.order_by is None:
            return []
        if isinstance(self.order_by, str):
            return [self.order_by]
        return list(self.order_by)

    def cache_payload(self) -> dict[str, Any]:
        """JSON-compatible representation used to build cache keys."""
        return self.model_dump(mode="json", exclude={"having", "cache", "cache_ttl"})


class PaginatedResult(BaseModel, Generic[T]):
    """One page of a find_paginated query."""
    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool


# =============================================================================
# TRANSACTION SEARCH & ANALYSIS
# =============================================================================

class TransactionFilters(BaseModel):
    """Composable filters for TransactionRepository.search."""
    model_config = ConfigDict(str_strip_whitespace=True)

    account_ids: Optional[list[str]] = None
    category_ids: Optional[list[str]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    amount_min: Optional[Decimal] = Field(default=None, description="Minimum absolute amount")
    amount_max: Optional[Decimal] = Field(default=None, description="Maximum absolute amount")
    type: Optional[TransactionType] = None
    merchants: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    is_recurring: Optional[bool] = None
    search_text: Optional[str] = None

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_ranges(self) -> "TransactionFilters":
        if self.date_from and self.date_to and self.date_to < self.date_from:
            raise ValueError("date_to cannot be before date_from")
        if (
            self.amount_min is not None
            and self.amount_max is not None
            and self.amount_max < self.amount_min
        ):
            raise ValueError("amount_max cannot be less than amount_min")
        return self


class Period(BaseModel):
    """A closed date range used for statistics normalization."""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_bounds(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_order(self) -> "Period":
        if self.end < self.start:
            raise ValueError("Period end cannot be before start")
        return self


class TransactionStats(BaseModel):
    """Aggregate statistics over a set of transactions."""
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    net_flow: Decimal = Decimal("0")
    transaction_count: int = 0
    average_transaction: Decimal = Decimal("0")
    largest_income: Optional[Transaction] = None
    largest_expense: Optional[Transaction] = None
    most_frequent_merchant: Optional[str] = None
    most_used_category: Optional[str] = None
    daily_average: Decimal = Decimal("0")
    monthly_average: Decimal = Decimal("0")
    day_count: int = 30


class SpendingPatterns(BaseModel):
    """Expense totals bucketed by weekday (Monday=0) and hour of day."""
    by_day_of_week: dict[int, Decimal] = Field(default_factory=dict)
    by_hour: dict[int, Decimal] = Field(default_factory=dict)
    busiest_day: Optional[int] = None
    busiest_hour: Optional[int] = None


class MonthlySummary(BaseModel):
    month: str
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")
    net: Decimal = Decimal("0")
    transaction_count: int = 0


class RunningBalanceEntry(BaseModel):
    transaction: Transaction
    balance: Decimal


class ImportRowError(BaseModel):
    index: int
    error: str
    row: dict[str, Any] = Field(default_factory=dict)


class BalanceMismatch(BaseModel):
    account_id: str
    stored_balance: Decimal
    calculated_balance: Decimal

    @property
    def drift(self) -> Decimal:
        return self.stored_balance - self.calculated_balance


class ImportResult(BaseModel):
    """Outcome of TransactionRepository.import_transactions."""
    imported: int = 0
    duplicates: int = 0
    errors: list[ImportRowError] = Field(default_factory=list)
    categorized: int = 0
    balance_mismatches: list[BalanceMismatch] = Field(default_factory=list)
    transaction_ids: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    """Result of Database.verify_integrity."""
    valid: bool = True
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    orphaned_transaction_ids: list[str] = Field(default_factory=list)
    duplicate_groups: int = 0


class TableStats(BaseModel):
    name: str
    count: int


class DatabaseStats(BaseModel):
    tables: list[TableStats] = Field(default_factory=list)
    total_records: int = 0
    schema_version: int
    cache_entries: int = 0
    cache_hit_rate: float = 0.0
    pending_syncs: int = 0
    failed_syncs: int = 0
