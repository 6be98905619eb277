"""
Budget Ledger Calculator

Derives per-category, per-month ledgers from budgets and transactions.

The recurrence is:
    remaining(N)  = budgeted(N) + carried_in(N) - spent(N)
    carried_in(N) = carry_forward(remaining(N-1), strategy(N-1))

DESIGN DECISION: Ledgers are never stored. Month N depends on month
N-1, so every calculation walks the chain forward from the category's
earliest budget month. Budget counts are small (one per category per
month), so recomputing is cheaper than keeping a materialized copy
consistent with every transaction edit.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import structlog

from kite.budgeting.months import month_bounds, month_key, month_range
from kite.models.entities import Budget, CarryStrategy, Transaction
from kite.models.ledger import BudgetLedger, BudgetLedgerEntry, BudgetStatus, LedgerEntryType

if TYPE_CHECKING:
    from kite.repositories.budgets import BudgetRepository
    from kite.repositories.transactions import TransactionRepository


logger = structlog.get_logger(__name__)

WARNING_THRESHOLD = 80.0
DANGER_THRESHOLD = 100.0


def carry_forward(remaining: Decimal, strategy: Optional[CarryStrategy]) -> Decimal:
    """What a month with `remaining` hands to the next month."""
    if strategy == CarryStrategy.CARRY_UNSPENT:
        return remaining if remaining > 0 else Decimal("0")
    if strategy == CarryStrategy.CARRY_OVERSPEND:
        return remaining if remaining < 0 else Decimal("0")
    return Decimal("0")


def compute_ledger(
    category_id: str,
    month: str,
    budget: Optional[Budget],
    carried_in: Decimal,
    expenses: list[Transaction],
) -> BudgetLedger:
    """Build one month's ledger from its budget, carry-in and expenses."""
    budgeted = budget.amount if budget is not None else Decimal("0")
    strategy = budget.carry_strategy if budget is not None else None
    start, _ = month_bounds(month)

    entries = []
    if budget is not None:
        entries.append(BudgetLedgerEntry(
            type=LedgerEntryType.BUDGETED,
            amount=budgeted,
            description=f"Budget for {month}",
            date=start,
        ))
    if carried_in:
        entries.append(BudgetLedgerEntry(
            type=LedgerEntryType.CARRY_IN,
            amount=carried_in,
            description="Carried in from previous month",
            date=start,
        ))

    spent = Decimal("0")
    for t in sorted(expenses, key=lambda t: t.date):
        spent += -t.amount
        entries.append(BudgetLedgerEntry(
            type=LedgerEntryType.SPENT,
            amount=-t.amount,
            description=t.merchant or t.description or "Expense",
            date=t.date,
            transaction_id=t.id,
        ))

    remaining = budgeted + carried_in - spent
    carried_out = carry_forward(remaining, strategy)
    if carried_out:
        entries.append(BudgetLedgerEntry(
            type=LedgerEntryType.CARRY_OUT,
            amount=carried_out,
            description="Carried out to next month",
        ))

    return BudgetLedger(
        category_id=category_id,
        month=month,
        budget_id=budget.id if budget is not None else None,
        carry_strategy=strategy,
        budgeted=budgeted,
        carried_in=carried_in,
        spent=spent,
        remaining=remaining,
        carried_out=carried_out,
        entries=entries,
    )


def budget_progress(ledger: BudgetLedger) -> float:
    """Percent of the available amount (budgeted + carried in) spent."""
    available = ledger.budgeted + ledger.carried_in
    if available <= 0:
        return 100.0 if ledger.spent > 0 else 0.0
    return float(ledger.spent / available * 100)


def budget_status(ledger: BudgetLedger) -> BudgetStatus:
    progress = budget_progress(ledger)
    if progress > DANGER_THRESHOLD:
        return BudgetStatus.DANGER
    if progress > WARNING_THRESHOLD:
        return BudgetStatus.WARNING
    return BudgetStatus.GOOD


def is_overspent(ledger: BudgetLedger) -> bool:
    return ledger.remaining < 0


class BudgetLedgerCalculator:
    """
    Computes ledgers on demand.

    Usage:
        calculator = BudgetLedgerCalculator(transactions_repo, budgets_repo)
        ledger = await calculator.calculate(category_id, "2024-03")
    """

    def __init__(self, transactions: "TransactionRepository", budgets: "BudgetRepository"):
        self._transactions = transactions
        self._budgets = budgets

    async def _chain(self, category_id: str, last_month: str) -> list[BudgetLedger]:
        budgets = await self._budgets.get_by_category(category_id)
        by_month = {b.month: b for b in budgets}
        first_month = min([b.month for b in budgets if b.month <= last_month], default=last_month)

        expenses: dict[str, list[Transaction]] = {}
        for t in await self._transactions.get_by_category(category_id):
            if t.amount < 0:
                expenses.setdefault(month_key(t.date), []).append(t)

        ledgers = []
        carried_in = Decimal("0")
        for month in month_range(first_month, last_month):
            ledger = compute_ledger(
                category_id, month, by_month.get(month), carried_in, expenses.get(month, [])
            )
            ledgers.append(ledger)
            carried_in = ledger.carried_out
        return ledgers

    async def calculate(self, category_id: str, month: str) -> BudgetLedger:
        """Ledger for one category and month, including carry from earlier months."""
        ledgers = await self._chain(category_id, month)
        return ledgers[-1]

    async def calculate_range(self, category_id: str, start: str, end: str) -> list[BudgetLedger]:
        """Ledgers for every month from start to end inclusive."""
        return [ledger for ledger in await self._chain(category_id, end) if ledger.month >= start]

    async def calculate_month(self, month: str) -> list[BudgetLedger]:
        """Ledgers for every category with a budget in `month`."""
        ledgers = []
        for budget in await self._budgets.get_by_month(month):
            ledgers.append(await self.calculate(budget.category_id, month))
        logger.debug("month_ledgers_calculated", month=month, count=len(ledgers))
        return ledgers

    async def total_budget_for_month(self, month: str) -> Decimal:
        return await self._budgets.get_total_for_month(month)

    async def total_spent_for_month(self, month: str) -> Decimal:
        """Absolute expenses in the month across all categories."""
        start, end = month_bounds(month)
        transactions = await self._transactions.get_by_date_range(start, end, include_end=False)
        return sum((-t.amount for t in transactions if t.amount < 0), Decimal("0"))
