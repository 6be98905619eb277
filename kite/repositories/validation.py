"""
Typed Validation Rules

Each repository declares a closed tuple of rules for its entity type.
Rules run after pydantic has validated the record's shape, so they only
deal with constraints that need the store (references, uniqueness) or
that depend on other fields.

DESIGN DECISION: Validation collects every issue before failing.
A caller fixing a form should see all problems at once, not one per
round-trip.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

from pydantic import BaseModel

from kite.models.base import ValidationIssue
from kite.storage.interface import EntityStoreInterface


@dataclass(frozen=True)
class ValidationContext:
    """What a rule may consult while checking a record."""
    store: EntityStoreInterface
    table: str


@dataclass(frozen=True)
class FieldRule(ABC):
    """Base for all field rules."""
    field: str

    @property
    def rule_name(self) -> str:
        return type(self).__name__.lower()

    def issue(self, message: str, value: Any = None) -> ValidationIssue:
        return ValidationIssue(field=self.field, rule=self.rule_name, message=message, value=value)

    @abstractmethod
    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        """Return an issue if the entity violates the rule."""
        pass


@dataclass(frozen=True)
class Required(FieldRule):
    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        value = getattr(entity, self.field, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            return self.issue(f"{self.field} is required")
        return None


@dataclass(frozen=True)
class Pattern(FieldRule):
    pattern: str = ""
    message: str = "has an invalid format"

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        value = getattr(entity, self.field, None)
        if value is not None and not re.match(self.pattern, str(value)):
            return self.issue(f"{self.field} {self.message}", value)
        return None


@dataclass(frozen=True)
class MinValue(FieldRule):
    minimum: Decimal = Decimal("0")

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        value = getattr(entity, self.field, None)
        if value is not None and value < self.minimum:
            return self.issue(f"{self.field} must be at least {self.minimum}", value)
        return None


@dataclass(frozen=True)
class MaxValue(FieldRule):
    maximum: Decimal = Decimal("0")

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        value = getattr(entity, self.field, None)
        if value is not None and value > self.maximum:
            return self.issue(f"{self.field} must be at most {self.maximum}", value)
        return None


@dataclass(frozen=True)
class References(FieldRule):
    """The field holds the id of an existing, non-deleted row in `table`."""
    table: str = ""
    required: bool = False

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        value = getattr(entity, self.field, None)
        if value is None:
            if self.required:
                return self.issue(f"{self.field} is required")
            return None
        record = ctx.store.get(self.table, value)
        if record is None or record.get("is_deleted"):
            return self.issue(f"{self.field} references missing {self.table} record {value}", value)
        return None


@dataclass(frozen=True)
class UniqueTogether(FieldRule):
    """No other live row in the table shares these field values."""
    fields: tuple[str, ...] = ()

    @property
    def rule_name(self) -> str:
        return "unique"

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        values = {name: getattr(entity, name) for name in self.fields}
        for record in ctx.store.where_equals(ctx.table, values):
            if record["id"] != entity.id and not record.get("is_deleted"):
                joined = ", ".join(f"{k}={v}" for k, v in values.items())
                return self.issue(f"A {ctx.table} record with {joined} already exists", values)
        return None


@dataclass(frozen=True)
class Custom(FieldRule):
    """Arbitrary predicate over the whole entity."""
    predicate: Callable[[Any], bool] = lambda entity: True
    message: str = "is invalid"
    name: str = "custom"

    @property
    def rule_name(self) -> str:
        return self.name

    def check(self, entity: BaseModel, ctx: ValidationContext) -> Optional[ValidationIssue]:
        if not self.predicate(entity):
            return self.issue(f"{self.field} {self.message}", getattr(entity, self.field, None))
        return None


def run_rules(
    rules: tuple[FieldRule, ...],
    entity: BaseModel,
    ctx: ValidationContext,
) -> list[ValidationIssue]:
    """Run every rule and collect the issues."""
    issues = []
    for rule in rules:
        issue = rule.check(entity, ctx)
        if issue is not None:
            issues.append(issue)
    return issues
