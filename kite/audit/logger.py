"""
Audit Logger

DESIGN DECISION: Every repository mutation is logged.
This provides:
1. Complete traceability of each record's history
2. Debugging capability
3. Before/after snapshots for every update

The audit logger:
- Writes to the audit_log table inside the caller's atomic unit, so an
  audit entry exists iff the mutation committed
- Mirrors every event to the structured local log
- Supports correlation IDs to trace multi-record operations
"""

from typing import Optional
from uuid import uuid4

import structlog

from kite.models.audit import AuditEvent, AuditSeverity
from kite.storage.interface import EntityStoreInterface


AUDIT_TABLE = "audit_log"


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The store's audit_log table (for persistence)
    """

    def __init__(self, store: Optional[EntityStoreInterface] = None):
        """
        Initialize audit logger.

        Args:
            store: Store holding the audit_log table.
                   If None, only logs locally.
        """
        self._store = store
        self._logger = structlog.get_logger(__name__)

    def record(self, event: AuditEvent) -> AuditEvent:
        """
        Log an audit event.

        Always logs locally. Persists to the store if available; storage
        failures propagate so the surrounding unit rolls back.
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._store is not None:
            self._store.insert(AUDIT_TABLE, event.to_record())
        return event

    def _events(self) -> list[AuditEvent]:
        if self._store is None:
            return []
        events = [AuditEvent.from_record(r) for r in self._store.scan(AUDIT_TABLE)]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_for_record(self, table_name: str, record_id: str) -> list[AuditEvent]:
        """History of one record, oldest first."""
        if self._store is None:
            return []
        records = self._store.where_equals(
            AUDIT_TABLE, {"table_name": table_name, "record_id": record_id}
        )
        events = [AuditEvent.from_record(r) for r in records]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_correlation_id(self, correlation_id: str) -> list[AuditEvent]:
        return [e for e in self._events() if e.correlation_id == correlation_id]

    async def get_recent_events(self, limit: int = 50) -> list[AuditEvent]:
        """Newest first."""
        return list(reversed(self._events()))[:limit]


def create_correlation_id() -> str:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a multi-record operation (merge, import)
    and pass it to every audit event the operation emits.
    """
    return str(uuid4())
