"""Repository layer: validated, audited CRUD plus domain queries per entity."""

from kite.repositories.accounts import AccountRepository
from kite.repositories.base import BaseRepository, ProgressCallback, RepositoryContext
from kite.repositories.budgets import BudgetRepository
from kite.repositories.categories import CategoryRepository
from kite.repositories.relationships import (
    BelongsTo,
    BelongsToMany,
    HasMany,
    HasOne,
    Relationship,
)
from kite.repositories.rules import RuleRepository
from kite.repositories.settings import SettingsRepository
from kite.repositories.subscriptions import SubscriptionRepository
from kite.repositories.transactions import TransactionRepository, build_predicate
from kite.repositories.validation import (
    Custom,
    FieldRule,
    MaxValue,
    MinValue,
    Pattern,
    References,
    Required,
    UniqueTogether,
    ValidationContext,
)

__all__ = [
    "BaseRepository",
    "RepositoryContext",
    "ProgressCallback",
    "AccountRepository",
    "TransactionRepository",
    "CategoryRepository",
    "BudgetRepository",
    "RuleRepository",
    "SubscriptionRepository",
    "SettingsRepository",
    "build_predicate",
    # Relationships
    "HasOne",
    "HasMany",
    "BelongsTo",
    "BelongsToMany",
    "Relationship",
    # Validation rules
    "FieldRule",
    "ValidationContext",
    "Required",
    "Pattern",
    "MinValue",
    "MaxValue",
    "References",
    "UniqueTogether",
    "Custom",
]
