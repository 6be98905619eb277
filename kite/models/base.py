"""
Shared Model Building Blocks

Every persisted entity inherits the audit envelope defined here.

DESIGN DECISION: The envelope is owned by the repository layer.
Callers never set id, version or audit timestamps; repositories strip
those keys from caller input before validation.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError


ENVELOPE_FIELDS = frozenset({
    "id",
    "created_at",
    "created_by",
    "updated_at",
    "updated_by",
    "version",
    "is_deleted",
    "deleted_at",
    "deleted_by",
})


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store's timestamp convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    """Generate an opaque record identifier."""
    return str(uuid4())


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC so stored ISO strings sort correctly."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ValidationIssue(BaseModel):
    """
    A single validation failure.

    Carries enough detail for a caller to act on it: which field,
    which rule rejected it and a human-readable message.
    """
    field: str = Field(..., description="Field that failed validation")
    rule: str = Field(..., description="Rule that rejected the value")
    message: str = Field(..., description="Human-readable explanation")
    value: Any = Field(default=None, description="Offending value, if useful")


class AuditedEntity(BaseModel):
    """
    Base for every stored entity: identity plus the audit envelope.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="forbid",
    )

    id: str = Field(default_factory=new_id, description="Opaque record identifier")

    created_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = Field(default=1, ge=1, description="Incremented on every successful write")

    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    # Loaded on demand by repositories; never persisted
    relations: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def to_record(self) -> dict[str, Any]:
        """JSON-compatible document for the entity store."""
        return self.model_dump(mode="json")


def issues_from_pydantic(error: PydanticValidationError) -> list[ValidationIssue]:
    """Flatten a pydantic error into field-level issues."""
    issues = []
    for err in error.errors():
        value = err.get("input")
        issues.append(ValidationIssue(
            field=".".join(str(part) for part in err["loc"]) or "__root__",
            rule=err["type"],
            message=err["msg"],
            value=value if isinstance(value, (str, int, float, bool, Decimal)) else None,
        ))
    return issues
