"""
Rule Engine

Evaluates an ordered set of condition -> action rules against a
transaction.

Semantics:
- Only enabled rules run, ordered by (priority, created_at, id); lower
  priority values run first.
- A rule matches when every one of its conditions holds.
- Each matching rule applies its actions. Category and subscription flag
  are last-writer-wins; notes and tags accumulate across every applied
  rule. A matching rule with stop_processing ends evaluation.

DESIGN DECISION: Outcomes are tracked per kind, not as one merged patch.
A later rule that only appends a tag never erases an earlier rule's
category, and a later category assignment never drops earlier tags.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from kite.models.base import ValidationIssue, issues_from_pydantic
from kite.models.entities import (
    AmountRange,
    ConditionField,
    ConditionOperator,
    Rule,
    RuleCondition,
    Transaction,
)


class RuleOutcome(BaseModel):
    """Independently tracked results of evaluating rules on one transaction."""
    category_id: Optional[str] = None
    category_rule_id: Optional[str] = Field(default=None, description="Rule that set the category")
    is_subscription: Optional[bool] = None
    notes: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    matched_rule_ids: list[str] = Field(default_factory=list)
    stopped_by: Optional[str] = None

    @property
    def matched(self) -> bool:
        return bool(self.matched_rule_ids)


class RulePreview(BaseModel):
    """How one rule fares against one transaction."""
    rule_id: str
    rule_name: str
    priority: int
    matched: bool
    condition_results: list[bool]


def _field_value(condition: RuleCondition, transaction: Transaction) -> Any:
    if condition.field == ConditionField.MERCHANT:
        return transaction.merchant or ""
    if condition.field == ConditionField.DESCRIPTION:
        return transaction.description or ""
    return abs(transaction.amount)


def _as_decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def evaluate_condition(condition: RuleCondition, transaction: Transaction) -> bool:
    """Check one condition. Never raises; malformed conditions simply don't match."""
    actual = _field_value(condition, transaction)

    if condition.field == ConditionField.AMOUNT:
        if condition.operator == ConditionOperator.RANGE and isinstance(condition.value, AmountRange):
            return condition.value.min <= actual <= condition.value.max
        if condition.operator == ConditionOperator.EQUALS:
            expected = _as_decimal(condition.value)
            return expected is not None and actual == expected
        return False

    text = str(actual).lower()
    expected = str(condition.value).lower()
    if condition.operator == ConditionOperator.EQUALS:
        return text == expected
    if condition.operator == ConditionOperator.CONTAINS:
        return expected in text
    if condition.operator == ConditionOperator.STARTS_WITH:
        return text.startswith(expected)
    if condition.operator == ConditionOperator.ENDS_WITH:
        return text.endswith(expected)
    if condition.operator == ConditionOperator.REGEX:
        try:
            return re.search(str(condition.value), str(actual), re.IGNORECASE) is not None
        except re.error:
            return False
    return False


def rule_matches(rule: Rule, transaction: Transaction) -> bool:
    return all(evaluate_condition(c, transaction) for c in rule.conditions)


def order_rules(rules: Iterable[Rule]) -> list[Rule]:
    """Enabled, non-deleted rules in evaluation order."""
    active = [r for r in rules if r.enabled and not r.is_deleted]
    return sorted(active, key=lambda r: (r.priority, r.created_at, r.id))


class RuleEngine:
    """
    Evaluates a fixed rule set.

    Usage:
        engine = RuleEngine(await rules_repo.get_enabled())
        outcome = engine.evaluate(transaction)
    """

    def __init__(self, rules: Iterable[Rule]):
        self.rules = order_rules(rules)

    def evaluate(self, transaction: Transaction) -> RuleOutcome:
        outcome = RuleOutcome()
        for rule in self.rules:
            if not rule_matches(rule, transaction):
                continue
            outcome.matched_rule_ids.append(rule.id)
            for action in rule.actions:
                if action.set_category_id:
                    outcome.category_id = action.set_category_id
                    outcome.category_rule_id = rule.id
                if action.set_is_subscription is not None:
                    outcome.is_subscription = action.set_is_subscription
                if action.append_note:
                    outcome.notes.append(action.append_note)
                if action.add_tag and action.add_tag not in outcome.tags:
                    outcome.tags.append(action.add_tag)
            if rule.stop_processing:
                outcome.stopped_by = rule.id
                break
        return outcome

    def preview(self, transaction: Transaction) -> list[RulePreview]:
        """Per-rule match report, ignoring stop_processing."""
        previews = []
        for rule in self.rules:
            results = [evaluate_condition(c, transaction) for c in rule.conditions]
            previews.append(RulePreview(
                rule_id=rule.id,
                rule_name=rule.name,
                priority=rule.priority,
                matched=all(results),
                condition_results=results,
            ))
        return previews

    @staticmethod
    def test_rule(rule: Rule, transactions: Iterable[Transaction]) -> list[Transaction]:
        """Transactions a single rule would match, enabled or not."""
        return [t for t in transactions if rule_matches(rule, t)]


def build_patch(transaction: Transaction, outcome: RuleOutcome) -> dict[str, Any]:
    """
    Turn an outcome into the minimal update for a transaction.

    Empty when the outcome would change nothing.
    """
    patch: dict[str, Any] = {}
    if outcome.category_id and outcome.category_id != transaction.category_id:
        patch["category_id"] = outcome.category_id
    if outcome.is_subscription is not None and outcome.is_subscription != transaction.is_subscription:
        patch["is_subscription"] = outcome.is_subscription

    new_notes = [n for n in outcome.notes if n not in (transaction.notes or "").split("\n")]
    if new_notes:
        patch["notes"] = "\n".join(([transaction.notes] if transaction.notes else []) + new_notes)

    new_tags = [t for t in outcome.tags if t not in transaction.tags]
    if new_tags:
        patch["tags"] = transaction.tags + new_tags
    return patch


def validate_rule(data: Mapping[str, Any]) -> list[ValidationIssue]:
    """Check a draft rule without persisting it. Empty list means valid."""
    try:
        Rule.model_validate(dict(data))
    except PydanticValidationError as e:
        return issues_from_pydantic(e)
    return []
