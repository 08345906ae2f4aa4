"""
Offline synchronization schemas.
"""

import enum
from pydantic import BaseModel
from typing import Any, Dict, Optional


class WriteOperation(str, enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class SyncState(str, enum.Enum):
    """Offline sync queue state."""
    CONNECTED = "connected"
    QUEUING = "queuing"
    DRAINING = "draining"


class WritePayload(BaseModel):
    """A datastore write, replayable at least once."""
    operation: WriteOperation
    table: str
    key: str
    row: Optional[Dict[str, Any]] = None
    critical: bool = False  # Critical writes are evicted last on overflow


class QueuedWrite(BaseModel):
    """A write waiting for connectivity."""
    payload: WritePayload
    attempt: int = 0
    enqueued_at_ms: int
    last_error: Optional[str] = None
