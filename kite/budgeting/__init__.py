"""Budget ledgers with month-over-month carryover."""

from kite.budgeting.ledger import (
    BudgetLedgerCalculator,
    budget_progress,
    budget_status,
    carry_forward,
    compute_ledger,
    is_overspent,
)
from kite.budgeting.months import month_bounds, month_key, month_range, shift_month

__all__ = [
    "BudgetLedgerCalculator",
    "budget_progress",
    "budget_status",
    "carry_forward",
    "compute_ledger",
    "is_overspent",
    "month_bounds",
    "month_key",
    "month_range",
    "shift_month",
]
