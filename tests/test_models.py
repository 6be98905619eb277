"""
Tests for Kite models

Test strategy:
1. Unit tests for schema rules on each entity
2. Audit event building and diffing
3. No store access here (see test_store / repository tests)
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from kite.models import (
    Account,
    AmountRange,
    AuditAction,
    AuditEvent,
    AuditEventBuilder,
    AuditSeverity,
    Budget,
    CarryStrategy,
    Category,
    Rule,
    RuleAction,
    RuleCondition,
    Subscription,
    Transaction,
    TransactionFilters,
)
from kite.models.audit import diff_records


class TestAccountModel:
    """Tests for the Account model."""

    def test_defaults(self):
        """New accounts default to USD checking with zero balance."""
        account = Account(name="Wallet")
        assert account.currency == "USD"
        assert account.balance == Decimal("0")
        assert account.version == 1
        assert account.is_archived is False

    def test_strips_whitespace(self):
        """Whitespace is stripped from names."""
        assert Account(name="  Savings  ").name == "Savings"

    def test_rejects_bad_currency(self):
        """Currency must be a three-letter upper-case code."""
        with pytest.raises(PydanticValidationError):
            Account(name="Wallet", currency="usd")

    def test_rejects_unknown_fields(self):
        """Unknown fields are rejected, not silently dropped."""
        with pytest.raises(PydanticValidationError):
            Account(name="Wallet", colour="red")


class TestTransactionModel:
    """Tests for the Transaction model."""

    def test_aware_dates_normalized_to_naive_utc(self):
        """Timezone-aware dates are stored as naive UTC."""
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        txn = Transaction(account_id="a1", date=aware, amount=Decimal("-5"))
        assert txn.date == datetime(2024, 1, 1, 10, 0)
        assert txn.date.tzinfo is None

    def test_tags_deduplicated(self):
        """Tags are stripped and de-duplicated in first-seen order."""
        txn = Transaction(
            account_id="a1", date=datetime(2024, 1, 1), amount=Decimal("1"),
            tags=["food", " food ", "", "travel"],
        )
        assert txn.tags == ["food", "travel"]

    def test_income_and_expense(self):
        """Sign of amount decides income versus expense."""
        assert Transaction(account_id="a", date=datetime(2024, 1, 1), amount=Decimal("10")).is_income
        assert Transaction(account_id="a", date=datetime(2024, 1, 1), amount=Decimal("-10")).is_expense

    def test_requires_account(self):
        """account_id is required."""
        with pytest.raises(PydanticValidationError):
            Transaction(date=datetime(2024, 1, 1), amount=Decimal("1"))


class TestBudgetAndCategoryModels:
    """Tests for Budget and Category."""

    def test_budget_month_format(self):
        """Budget months must be YYYY-MM."""
        Budget(category_id="c1", month="2024-03", amount=Decimal("100"))
        with pytest.raises(PydanticValidationError):
            Budget(category_id="c1", month="2024-13", amount=Decimal("100"))
        with pytest.raises(PydanticValidationError):
            Budget(category_id="c1", month="March", amount=Decimal("100"))

    def test_budget_amount_non_negative(self):
        """Budget amounts cannot be negative."""
        with pytest.raises(PydanticValidationError):
            Budget(category_id="c1", month="2024-03", amount=Decimal("-1"))

    def test_budget_default_strategy(self):
        assert Budget(category_id="c1", month="2024-03", amount=1).carry_strategy == CarryStrategy.NONE

    def test_category_color(self):
        """Colors must be #RRGGBB."""
        assert Category(name="Food").color == "#9E9E9E"
        with pytest.raises(PydanticValidationError):
            Category(name="Food", color="red")


class TestRuleModels:
    """Tests for rule conditions and actions."""

    def test_string_condition(self):
        condition = RuleCondition(field="merchant", operator="contains", value="Coffee")
        assert condition.value == "Coffee"

    def test_range_condition(self):
        """Range conditions take a {min, max} on amount."""
        condition = RuleCondition(field="amount", operator="range", value={"min": 10, "max": 20})
        assert isinstance(condition.value, AmountRange)

    def test_range_min_above_max_rejected(self):
        with pytest.raises(PydanticValidationError, match="minimum cannot exceed"):
            RuleCondition(field="amount", operator="range", value={"min": 30, "max": 20})

    def test_range_only_on_amount(self):
        with pytest.raises(PydanticValidationError):
            RuleCondition(field="merchant", operator="range", value={"min": 1, "max": 2})

    def test_amount_rejects_string_operators(self):
        with pytest.raises(PydanticValidationError):
            RuleCondition(field="amount", operator="contains", value="12")

    def test_invalid_regex_rejected(self):
        with pytest.raises(PydanticValidationError, match="Invalid regex"):
            RuleCondition(field="description", operator="regex", value="([a-z")

    def test_empty_action_rejected(self):
        """An action must change something."""
        with pytest.raises(PydanticValidationError):
            RuleAction()

    def test_rule_needs_conditions_and_actions(self):
        with pytest.raises(PydanticValidationError):
            Rule(name="Empty", conditions=[], actions=[{"add_tag": "x"}])
        with pytest.raises(PydanticValidationError):
            Rule(name="Empty", conditions=[{"field": "merchant", "operator": "equals", "value": "x"}], actions=[])


class TestSubscriptionModel:

    def test_custom_cadence_needs_interval(self):
        """Custom cadence requires interval_days."""
        with pytest.raises(PydanticValidationError, match="interval_days"):
            Subscription(name="Gym", cadence="custom", amount=Decimal("30"), next_due_date=date(2024, 1, 1))
        sub = Subscription(
            name="Gym", cadence="custom", interval_days=14,
            amount=Decimal("30"), next_due_date=date(2024, 1, 1),
        )
        assert sub.interval_days == 14


class TestQueryModels:

    def test_filter_ranges_validated(self):
        """Inverted date or amount ranges are rejected."""
        with pytest.raises(PydanticValidationError):
            TransactionFilters(date_from=datetime(2024, 2, 1), date_to=datetime(2024, 1, 1))
        with pytest.raises(PydanticValidationError):
            TransactionFilters(amount_min=Decimal("10"), amount_max=Decimal("5"))


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            action=AuditAction.CREATE,
            table_name="accounts",
            record_id="a1",
            description="Created accounts a1",
        )
        log_dict = event.to_log_dict()
        assert log_dict["action"] == "create"
        assert log_dict["table_name"] == "accounts"
        assert log_dict["severity"] == "info"

    def test_record_round_trip(self):
        """Stored audit records load back into equal events."""
        event = AuditEventBuilder.created("accounts", {"id": "a1", "name": "Checking"}, actor="alice")
        loaded = AuditEvent.from_record(event.to_record())
        assert loaded.event_id == event.event_id
        assert loaded.actor == "alice"
        assert loaded.record_id == "a1"

    def test_diff_records(self):
        """Only changed keys appear in a diff."""
        diff = diff_records({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
        assert diff == {"b": {"before": 2, "after": 3}, "c": {"before": None, "after": 4}}

    def test_updated_builder_carries_changes(self):
        event = AuditEventBuilder.updated(
            "accounts", {"id": "a1", "name": "Old"}, {"id": "a1", "name": "New"}
        )
        assert event.action == AuditAction.UPDATE
        assert event.details["changes"] == {"name": {"before": "Old", "after": "New"}}

    def test_reset_is_warning(self):
        event = AuditEventBuilder.data_reset("reset-2024-01-01T00:00:00")
        assert event.severity == AuditSeverity.WARNING


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
