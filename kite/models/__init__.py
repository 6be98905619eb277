"""
Data Models Package

This package contains all Pydantic models used by Kite.
Every record flowing through the repositories conforms to these schemas.
"""

from kite.models.base import (
    AuditedEntity,
    ValidationIssue,
    new_id,
    utcnow,
)
from kite.models.entities import (
    Account,
    AccountType,
    AmountRange,
    Budget,
    CarryStrategy,
    Category,
    ConditionField,
    ConditionOperator,
    Rule,
    RuleAction,
    RuleCondition,
    Subscription,
    SubscriptionCadence,
    Transaction,
    TransactionType,
)
from kite.models.audit import (
    AuditAction,
    AuditEvent,
    AuditEventBuilder,
    AuditSeverity,
)
from kite.models.ledger import (
    BudgetLedger,
    BudgetLedgerEntry,
    BudgetStatus,
    LedgerEntryType,
)
from kite.models.queries import (
    BalanceMismatch,
    DatabaseStats,
    ImportResult,
    ImportRowError,
    IntegrityReport,
    MonthlySummary,
    OrderDirection,
    PaginatedResult,
    Period,
    QueryOptions,
    RunningBalanceEntry,
    SpendingPatterns,
    TableStats,
    TransactionFilters,
    TransactionStats,
)
from kite.models.sync import (
    DrainResult,
    SyncOperation,
    SyncQueueItem,
    SyncStatus,
)

__all__ = [
    # Base
    "AuditedEntity",
    "ValidationIssue",
    "new_id",
    "utcnow",
    # Entities
    "Account",
    "AccountType",
    "AmountRange",
    "Budget",
    "CarryStrategy",
    "Category",
    "ConditionField",
    "ConditionOperator",
    "Rule",
    "RuleAction",
    "RuleCondition",
    "Subscription",
    "SubscriptionCadence",
    "Transaction",
    "TransactionType",
    # Audit
    "AuditAction",
    "AuditEvent",
    "AuditEventBuilder",
    "AuditSeverity",
    # Ledger
    "BudgetLedger",
    "BudgetLedgerEntry",
    "BudgetStatus",
    "LedgerEntryType",
    # Queries
    "BalanceMismatch",
    "DatabaseStats",
    "ImportResult",
    "ImportRowError",
    "IntegrityReport",
    "MonthlySummary",
    "OrderDirection",
    "PaginatedResult",
    "Period",
    "QueryOptions",
    "RunningBalanceEntry",
    "SpendingPatterns",
    "TableStats",
    "TransactionFilters",
    "TransactionStats",
    # Sync
    "DrainResult",
    "SyncOperation",
    "SyncQueueItem",
    "SyncStatus",
]
