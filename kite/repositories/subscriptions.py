"""
Subscription Repository

Tracks recurring charges and rolls their due dates forward.
"""

import calendar
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from kite.models.entities import Subscription, SubscriptionCadence
from kite.repositories.base import BaseRepository
from kite.repositories.relationships import BelongsTo
from kite.repositories.validation import References


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping to the last day of short months."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def next_due(subscription: Subscription) -> date:
    if subscription.cadence == SubscriptionCadence.MONTHLY:
        return add_months(subscription.next_due_date, 1)
    if subscription.cadence == SubscriptionCadence.YEARLY:
        return add_months(subscription.next_due_date, 12)
    return subscription.next_due_date + timedelta(days=subscription.interval_days)


def monthly_cost(subscription: Subscription) -> Decimal:
    """Normalized cost per month."""
    if subscription.cadence == SubscriptionCadence.MONTHLY:
        return subscription.amount
    if subscription.cadence == SubscriptionCadence.YEARLY:
        return subscription.amount / 12
    return subscription.amount * Decimal("30") / subscription.interval_days


class SubscriptionRepository(BaseRepository[Subscription]):
    model = Subscription
    table = "subscriptions"
    soft_delete = False
    validation_rules = (
        References("account_id", table="accounts"),
        References("category_id", table="categories"),
    )
    relationships = {
        "account": BelongsTo(table="accounts", local_key="account_id"),
        "category": BelongsTo(table="categories", local_key="category_id"),
    }

    async def get_upcoming(self, days: int = 30, today: Optional[date] = None) -> list[Subscription]:
        """Subscriptions due within `days` of today, soonest first."""
        today = today or date.today()
        horizon = today + timedelta(days=days)
        upcoming = [s for s in self._query() if today <= s.next_due_date <= horizon]
        return sorted(upcoming, key=lambda s: s.next_due_date)

    async def advance_due_date(self, subscription_id: str, actor: Optional[str] = None) -> Subscription:
        """Roll next_due_date forward by one billing period."""
        current = await self.get(subscription_id)
        return await self.update(
            subscription_id,
            {"next_due_date": next_due(current)},
            actor=actor,
            expected_version=current.version,
        )

    async def get_monthly_total(self) -> Decimal:
        return sum((monthly_cost(s) for s in self._query()), Decimal("0"))

    async def get_yearly_total(self) -> Decimal:
        return await self.get_monthly_total() * 12
