"""
Tests for the rule engine

Pure evaluation: no store involved.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from kite.models import Rule, RuleCondition, Transaction
from kite.rules import (
    RuleEngine,
    build_patch,
    evaluate_condition,
    order_rules,
    validate_rule,
)


def txn(**fields) -> Transaction:
    data = {
        "account_id": "acc-1",
        "date": datetime(2024, 3, 15, 12),
        "amount": Decimal("-40"),
        "merchant": "Coffee Co",
        "description": "Morning latte",
    }
    data.update(fields)
    return Transaction(**data)


def cond(field, operator, value) -> RuleCondition:
    return RuleCondition(field=field, operator=operator, value=value)


def rule(name, conditions, actions, **fields) -> Rule:
    return Rule(name=name, conditions=conditions, actions=actions, **fields)


class TestConditions:
    """Tests for single-condition evaluation."""

    @pytest.mark.parametrize("operator,value,expected", [
        ("equals", "coffee co", True),
        ("equals", "Coffee", False),
        ("contains", "FFEE", True),
        ("starts_with", "coffee", True),
        ("starts_with", "co.", False),
        ("ends_with", " co", True),
        ("regex", r"^cof+ee\s", True),
        ("regex", r"tea$", False),
    ])
    def test_string_operators_ignore_case(self, operator, value, expected):
        assert evaluate_condition(cond("merchant", operator, value), txn()) is expected

    def test_description_field(self):
        assert evaluate_condition(cond("description", "contains", "latte"), txn())

    def test_missing_merchant_matches_nothing(self):
        assert not evaluate_condition(cond("merchant", "contains", "co"), txn(merchant=None))

    def test_amount_equals_uses_absolute_value(self):
        assert evaluate_condition(cond("amount", "equals", "40"), txn())
        assert evaluate_condition(cond("amount", "equals", Decimal("40.00")), txn(amount=Decimal("40")))
        assert not evaluate_condition(cond("amount", "equals", "-40"), txn())

    def test_amount_range_is_inclusive(self):
        condition = cond("amount", "range", {"min": "10", "max": "40"})
        assert evaluate_condition(condition, txn())
        assert evaluate_condition(condition, txn(amount=Decimal("-10")))
        assert not evaluate_condition(condition, txn(amount=Decimal("-40.01")))


class TestConditionValidation:
    """Tests for malformed conditions rejected at construction."""

    def test_range_only_for_amount(self):
        with pytest.raises(ValueError):
            cond("merchant", "range", {"min": "1", "max": "2"})

    def test_range_bounds_ordered(self):
        with pytest.raises(ValueError):
            cond("amount", "range", {"min": "5", "max": "1"})

    def test_amount_rejects_string_operators(self):
        with pytest.raises(ValueError):
            cond("amount", "contains", "4")

    def test_invalid_regex(self):
        with pytest.raises(ValueError):
            cond("merchant", "regex", "([")

    def test_validate_rule_reports_issues(self):
        issues = validate_rule({
            "name": "Bad",
            "conditions": [{"field": "merchant", "operator": "regex", "value": "(["}],
            "actions": [{}],
        })
        fields = {issue.field for issue in issues}
        assert any(f.startswith("conditions") for f in fields)
        assert any(f.startswith("actions") for f in fields)

    def test_validate_rule_accepts_valid(self):
        assert validate_rule({
            "name": "Good",
            "conditions": [{"field": "merchant", "operator": "contains", "value": "coffee"}],
            "actions": [{"add_tag": "coffee"}],
        }) == []


class TestEvaluation:
    """Tests for ordered multi-rule evaluation."""

    def test_order_by_priority_then_created(self):
        late = rule("late", [cond("merchant", "contains", "c")], [{"add_tag": "a"}],
                    priority=1, created_at=datetime(2024, 1, 2))
        early = rule("early", [cond("merchant", "contains", "c")], [{"add_tag": "b"}],
                     priority=1, created_at=datetime(2024, 1, 1))
        first = rule("first", [cond("merchant", "contains", "c")], [{"add_tag": "c"}], priority=0)
        disabled = rule("off", [cond("merchant", "contains", "c")], [{"add_tag": "d"}], enabled=False)

        assert [r.name for r in order_rules([late, early, first, disabled])] == ["first", "early", "late"]

    def test_all_conditions_must_match(self):
        both = rule("both", [
            cond("merchant", "contains", "coffee"),
            cond("amount", "range", {"min": "100", "max": "200"}),
        ], [{"add_tag": "big"}])
        outcome = RuleEngine([both]).evaluate(txn())
        assert not outcome.matched

    def test_stop_processing_halts(self):
        stop = rule("stop", [cond("merchant", "contains", "coffee")],
                    [{"set_category_id": "dining"}], priority=0, stop_processing=True)
        later = rule("later", [cond("merchant", "contains", "coffee")],
                     [{"set_category_id": "other"}], priority=1)
        outcome = RuleEngine([later, stop]).evaluate(txn())
        assert outcome.category_id == "dining"
        assert outcome.stopped_by == stop.id
        assert outcome.matched_rule_ids == [stop.id]

    def test_outcomes_accumulate_independently(self):
        categorize = rule("cat", [cond("merchant", "contains", "coffee")],
                          [{"set_category_id": "dining", "add_tag": "coffee"}], priority=0)
        tag_only = rule("tag", [cond("description", "contains", "latte")],
                        [{"add_tag": "milk", "append_note": "auto"}], priority=1)
        outcome = RuleEngine([categorize, tag_only]).evaluate(txn())
        assert outcome.category_id == "dining"
        assert outcome.category_rule_id == categorize.id
        assert outcome.tags == ["coffee", "milk"]
        assert outcome.notes == ["auto"]

    def test_later_category_wins(self):
        a = rule("a", [cond("merchant", "contains", "coffee")], [{"set_category_id": "one"}], priority=0)
        b = rule("b", [cond("merchant", "contains", "coffee")], [{"set_category_id": "two"}], priority=1)
        assert RuleEngine([a, b]).evaluate(txn()).category_id == "two"

    def test_repeated_evaluation_is_stable(self):
        engine = RuleEngine([
            rule("cat", [cond("merchant", "contains", "coffee")], [{"set_category_id": "dining"}], priority=0),
            rule("tag", [cond("description", "contains", "latte")], [{"add_tag": "milk"}], priority=1),
        ])
        first = engine.evaluate(txn())
        assert all(engine.evaluate(txn()) == first for _ in range(5))

    def test_priority_swap_with_disjoint_conditions(self):
        """Only one rule can match, so order does not change the result."""
        coffee = rule("coffee", [cond("merchant", "contains", "coffee")],
                      [{"set_category_id": "dining"}], priority=0)
        grocer = rule("grocer", [cond("merchant", "contains", "grocer")],
                      [{"set_category_id": "groceries"}], priority=1)
        swapped = [
            coffee.model_copy(update={"priority": 1}),
            grocer.model_copy(update={"priority": 0}),
        ]

        for merchant, expected in [("Coffee Co", "dining"), ("Corner Grocer", "groceries")]:
            before = RuleEngine([coffee, grocer]).evaluate(txn(merchant=merchant))
            after = RuleEngine(swapped).evaluate(txn(merchant=merchant))
            assert before.category_id == after.category_id == expected
            assert before.matched_rule_ids == after.matched_rule_ids

    def test_preview_ignores_stop_processing(self):
        stop = rule("stop", [cond("merchant", "contains", "coffee")],
                    [{"add_tag": "x"}], priority=0, stop_processing=True)
        miss = rule("miss", [cond("merchant", "equals", "tea")], [{"add_tag": "y"}], priority=1)
        previews = RuleEngine([stop, miss]).preview(txn())
        assert [(p.rule_name, p.matched) for p in previews] == [("stop", True), ("miss", False)]
        assert previews[1].condition_results == [False]

    def test_test_rule_includes_disabled(self):
        disabled = rule("off", [cond("merchant", "contains", "coffee")], [{"add_tag": "x"}], enabled=False)
        matches = RuleEngine.test_rule(disabled, [txn(), txn(merchant="Tea House")])
        assert len(matches) == 1


class TestBuildPatch:
    """Tests for turning outcomes into updates."""

    def test_minimal_patch(self):
        transaction = txn(category_id="dining", tags=["coffee"], notes="auto")
        outcome = RuleEngine([
            rule("r", [cond("merchant", "contains", "coffee")],
                 [{"set_category_id": "dining", "add_tag": "coffee", "append_note": "auto"}]),
        ]).evaluate(transaction)
        assert build_patch(transaction, outcome) == {}

    def test_patch_appends(self):
        transaction = txn(tags=["a"], notes="first")
        outcome = RuleEngine([
            rule("r", [cond("merchant", "contains", "coffee")],
                 [{"set_category_id": "dining", "set_is_subscription": True,
                   "add_tag": "b", "append_note": "second"}]),
        ]).evaluate(transaction)
        assert build_patch(transaction, outcome) == {
            "category_id": "dining",
            "is_subscription": True,
            "notes": "first\nsecond",
            "tags": ["a", "b"],
        }


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
