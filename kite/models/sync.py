"""
Offline Sync Queue Models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from kite.models.base import new_id, utcnow


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


class SyncQueueItem(BaseModel):
    """A write captured while disconnected, waiting to be replayed."""
    id: str = Field(default_factory=new_id)
    operation: SyncOperation
    table_name: str
    payload: dict[str, Any]
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = Field(default=0, description="Capture order tie-breaker")
    retry_count: int = 0
    status: SyncStatus = SyncStatus.PENDING
    error: Optional[str] = None


class DrainResult(BaseModel):
    """Outcome of one queue drain."""
    processed: int = 0
    failed: int = 0
    remaining: int = 0
