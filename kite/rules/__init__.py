"""Rule engine package."""

from kite.rules.engine import (
    RuleEngine,
    RuleOutcome,
    RulePreview,
    build_patch,
    evaluate_condition,
    order_rules,
    rule_matches,
    validate_rule,
)

__all__ = [
    "RuleEngine",
    "RuleOutcome",
    "RulePreview",
    "build_patch",
    "evaluate_condition",
    "order_rules",
    "rule_matches",
    "validate_rule",
]
