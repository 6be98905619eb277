"""
Core Data Models for Kite

These models define the strict schemas for every entity the data layer
persists: accounts, transactions, categories, budgets, rules and
subscriptions.

DESIGN DECISION: Money is always Decimal.
Balances, duplicate tolerances and ledger arithmetic must be exact;
floats would drift at the cent level.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from kite.models.base import AuditedEntity, to_naive_utc


CURRENCY_PATTERN = r"^[A-Z]{3}$"
MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Supported account types."""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    INVESTMENT = "investment"
    CASH = "cash"
    LOAN = "loan"
    OTHER = "other"


class CarryStrategy(str, Enum):
    """
    How a budget's remaining amount propagates into the next month.

    CARRY_UNSPENT only carries surplus; CARRY_OVERSPEND only carries
    deficits. Neither ever carries both.
    """
    NONE = "none"
    CARRY_UNSPENT = "carry_unspent"
    CARRY_OVERSPEND = "carry_overspend"


class ConditionField(str, Enum):
    """Transaction fields a rule condition can inspect."""
    MERCHANT = "merchant"
    DESCRIPTION = "description"
    AMOUNT = "amount"


class ConditionOperator(str, Enum):
    """Rule condition operators."""
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    RANGE = "range"


STRING_OPERATORS = frozenset({
    ConditionOperator.CONTAINS,
    ConditionOperator.STARTS_WITH,
    ConditionOperator.ENDS_WITH,
    ConditionOperator.REGEX,
})


class SubscriptionCadence(str, Enum):
    """Billing cadence of a subscription."""
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class TransactionType(str, Enum):
    """Derived transaction type used by search filters."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


# =============================================================================
# ACCOUNTS
# =============================================================================

class Account(AuditedEntity):
    """
    A financial account owning transactions.

    Archiving is soft (archived_at). Deletion is hard and only allowed
    while no transaction references the account.
    """
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = Field(default=AccountType.CHECKING)
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    balance: Decimal = Field(default=Decimal("0"), description="Stored balance")
    archived_at: Optional[datetime] = None
    is_default: bool = False
    institution: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


# =============================================================================
# TRANSACTIONS
# =============================================================================

class Transaction(AuditedEntity):
    """
    A single financial transaction.

    Amount is signed: positive is income, negative is expense.
    """
    account_id: str = Field(..., min_length=1, description="Owning account id")
    date: datetime = Field(..., description="When the transaction happened (UTC)")
    amount: Decimal = Field(..., description="Signed amount")
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    description: str = Field(default="", max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[str] = None
    is_subscription: Optional[bool] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    is_transfer: bool = False
    is_recurring: bool = False

    @field_validator("date")
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: list[str]) -> list[str]:
        """Strip and de-duplicate tags, keeping first-seen order."""
        seen: list[str] = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @property
    def is_income(self) -> bool:
        return self.amount > 0

    @property
    def is_expense(self) -> bool:
        return self.amount < 0


# =============================================================================
# CATEGORIES & BUDGETS
# =============================================================================

class Category(AuditedEntity):
    """A spending category; categories form a tree via parent_id."""
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = Field(default="", max_length=50)
    color: str = Field(default="#9E9E9E", pattern=r"^#[0-9A-Fa-f]{6}$")
    parent_id: Optional[str] = None


class Budget(AuditedEntity):
    """A monthly spending budget for one category."""
    category_id: str = Field(..., min_length=1)
    month: str = Field(..., pattern=MONTH_PATTERN, description="YYYY-MM")
    amount: Decimal = Field(..., ge=0)
    carry_strategy: CarryStrategy = Field(default=CarryStrategy.NONE)
    notes: Optional[str] = None


# =============================================================================
# RULES
# =============================================================================

class AmountRange(BaseModel):
    """Inclusive amount range used by RANGE conditions."""
    model_config = ConfigDict(extra="forbid")

    min: Decimal
    max: Decimal


class RuleCondition(BaseModel):
    """
    One condition of a rule.

    String operators compare case-insensitively. Amount conditions
    compare against the absolute transaction amount.
    """
    model_config = ConfigDict(extra="forbid")

    field: ConditionField
    operator: ConditionOperator
    value: Union[AmountRange, Decimal, str]

    @model_validator(mode="after")
    def validate_operator_value(self) -> "RuleCondition":
        if self.operator == ConditionOperator.RANGE:
            if self.field != ConditionField.AMOUNT:
                raise ValueError("Range conditions only apply to amount")
            if not isinstance(self.value, AmountRange):
                raise ValueError("Range conditions need a {min, max} value")
            if self.value.min > self.value.max:
                raise ValueError("Range minimum cannot exceed maximum")
            return self

        if isinstance(self.value, AmountRange):
            raise ValueError(f"Operator {self.operator.value} does not take a range")

        if self.field == ConditionField.AMOUNT:
            if self.operator != ConditionOperator.EQUALS:
                raise ValueError("Amount conditions support equals or range only")
            try:
                Decimal(str(self.value))
            except ArithmeticError:
                raise ValueError(f"Amount condition value is not a number: {self.value}")
            return self

        if not str(self.value):
            raise ValueError("Condition value cannot be empty")
        if self.operator == ConditionOperator.REGEX:
            try:
                re.compile(str(self.value))
            except re.error as e:
                raise ValueError(f"Invalid regex pattern: {e}")
        return self


class RuleAction(BaseModel):
    """One action of a rule. Each action must set at least one outcome."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    set_category_id: Optional[str] = None
    set_is_subscription: Optional[bool] = None
    append_note: Optional[str] = None
    add_tag: Optional[str] = None

    @model_validator(mode="after")
    def validate_not_empty(self) -> "RuleAction":
        if (
            not self.set_category_id
            and self.set_is_subscription is None
            and not self.append_note
            and not self.add_tag
        ):
            raise ValueError("Action must specify at least one change")
        return self


class Rule(AuditedEntity):
    """An ordered condition -> action rule used for auto-categorization."""
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    priority: int = Field(default=0, ge=0, description="Lower values run first")
    conditions: list[RuleCondition] = Field(..., min_length=1)
    actions: list[RuleAction] = Field(..., min_length=1)
    stop_processing: bool = False


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class Subscription(AuditedEntity):
    """A recurring charge with a next due date."""
    name: str = Field(..., min_length=1, max_length=100)
    cadence: SubscriptionCadence = Field(default=SubscriptionCadence.MONTHLY)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    next_due_date: date
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    interval_days: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_custom_interval(self) -> "Subscription":
        if self.cadence == SubscriptionCadence.CUSTOM and self.interval_days is None:
            raise ValueError("Custom cadence requires interval_days")
        return self
