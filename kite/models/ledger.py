"""
Budget Ledger Models

A ledger is the derived, per-category, per-month view of a budget:
what was budgeted, what came in from the prior month, what was spent,
and what carries out to the next month.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from kite.models.entities import CarryStrategy


class LedgerEntryType(str, Enum):
    BUDGETED = "budgeted"
    CARRY_IN = "carry_in"
    SPENT = "spent"
    CARRY_OUT = "carry_out"


class BudgetStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    DANGER = "danger"


class BudgetLedgerEntry(BaseModel):
    """One line of a ledger; amounts are positive except carries."""
    type: LedgerEntryType
    amount: Decimal
    description: str
    date: Optional[datetime] = None
    transaction_id: Optional[str] = None


class BudgetLedger(BaseModel):
    """
    Ledger for one (category, month).

    remaining = budgeted + carried_in - spent. carried_out is what the
    next month receives under this month's carry strategy.
    """
    category_id: str
    month: str
    budget_id: Optional[str] = None
    carry_strategy: Optional[CarryStrategy] = None
    budgeted: Decimal = Decimal("0")
    carried_in: Decimal = Decimal("0")
    spent: Decimal = Decimal("0")
    remaining: Decimal = Decimal("0")
    carried_out: Decimal = Decimal("0")
    entries: list[BudgetLedgerEntry] = Field(default_factory=list)
