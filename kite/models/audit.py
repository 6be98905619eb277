"""
Audit Models for Kite

Every mutation made through a repository is logged for audit purposes.
This provides:
1. Complete traceability of every record's history
2. Before/after snapshots and field diffs for updates
3. Correlation of multi-record operations (merges, imports)

DESIGN DECISION: Audit logs are append-only. Repositories never update or
delete audit events; only a full data reset clears them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from kite.models.base import utcnow


class AuditAction(str, Enum):
    """
    Types of record-level actions we audit.
    """
    CREATE = "create"
    UPDATE = "update"
    SOFT_DELETE = "soft_delete"
    HARD_DELETE = "hard_delete"
    RESTORE = "restore"
    MERGE = "merge"
    IMPORT = "import"
    RESET = "reset"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail. Stored in the audit_log
    table keyed by event_id.
    """

    # Identity
    event_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    action: AuditAction = Field(
        ...,
        description="What happened to the record"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - which record is this about?
    table_name: str = Field(
        ...,
        description="Table the record lives in"
    )
    record_id: Optional[str] = Field(
        default=None,
        description="ID of the record this event relates to"
    )
    actor: Optional[str] = Field(
        default=None,
        description="Who performed the action"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[str] = Field(
        default=None,
        description="ID shared by all events of one multi-record operation"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Snapshots, diffs and other event-specific data"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.

        Snapshots are left out to keep log lines short.
        """
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "severity": self.severity.value,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "actor": self.actor,
            "correlation_id": self.correlation_id,
            "description": self.description,
            "changed_fields": sorted(self.details.get("changes", {})),
        }

    def to_record(self) -> dict[str, Any]:
        """Convert to a document for the audit_log table."""
        record = self.model_dump(mode="json")
        record["id"] = self.event_id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "AuditEvent":
        data = dict(record)
        data.pop("id", None)
        return cls.model_validate(data)


def diff_records(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Field-level diff between two JSON documents."""
    changes = {}
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            changes[key] = {"before": before.get(key), "after": after.get(key)}
    return changes


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.created("accounts", record, actor)
        event = AuditEventBuilder.updated("accounts", before, after, actor)
    """

    @staticmethod
    def created(
        table_name: str,
        record: dict[str, Any],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=AuditAction.CREATE,
            table_name=table_name,
            record_id=record.get("id"),
            actor=actor,
            correlation_id=correlation_id,
            description=f"Created {table_name} record",
            details={"after": record},
        )

    @staticmethod
    def updated(
        table_name: str,
        before: dict[str, Any],
        after: dict[str, Any],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        changes = diff_records(before, after)
        return AuditEvent(
            action=AuditAction.UPDATE,
            table_name=table_name,
            record_id=after.get("id"),
            actor=actor,
            correlation_id=correlation_id,
            description=f"Updated {table_name} record ({len(changes)} fields)",
            details={"before": before, "after": after, "changes": changes},
        )

    @staticmethod
    def deleted(
        table_name: str,
        record: dict[str, Any],
        soft: bool,
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        action = AuditAction.SOFT_DELETE if soft else AuditAction.HARD_DELETE
        return AuditEvent(
            action=action,
            severity=AuditSeverity.INFO if soft else AuditSeverity.WARNING,
            table_name=table_name,
            record_id=record.get("id"),
            actor=actor,
            correlation_id=correlation_id,
            description=f"{'Soft' if soft else 'Hard'}-deleted {table_name} record",
            details={"before": record},
        )

    @staticmethod
    def restored(
        table_name: str,
        record: dict[str, Any],
        actor: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=AuditAction.RESTORE,
            table_name=table_name,
            record_id=record.get("id"),
            actor=actor,
            description=f"Restored {table_name} record",
            details={"after": record},
        )

    @staticmethod
    def merged(
        table_name: str,
        kept_id: str,
        merged_ids: list[str],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=AuditAction.MERGE,
            table_name=table_name,
            record_id=kept_id,
            actor=actor,
            correlation_id=correlation_id,
            description=f"Merged {len(merged_ids)} duplicate records into {kept_id}",
            details={"merged_from": merged_ids},
        )

    @staticmethod
    def imported(
        table_counts: dict[str, int],
        merge: bool,
        actor: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=AuditAction.IMPORT,
            table_name="*",
            actor=actor,
            description=f"Imported backup ({'merge' if merge else 'replace'})",
            details={"tables": table_counts, "merge": merge},
        )

    @staticmethod
    def data_reset(migration: str) -> AuditEvent:
        return AuditEvent(
            action=AuditAction.RESET,
            severity=AuditSeverity.WARNING,
            table_name="*",
            description="All data tables cleared",
            details={"migration": migration},
        )
