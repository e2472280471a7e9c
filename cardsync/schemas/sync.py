from datetime import datetime
from typing import Optional

from .base import BaseSchema


class SyncQueueEntryRead(BaseSchema):
    id: int
    inventory_item_id: int
    action: str
    status: str
    attempts: int
    max_attempts: int
    rate_limited_count: int
    last_error: Optional[str] = None
    retry_after: Optional[datetime] = None
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DrainSummary(BaseSchema):
    claimed: int = 0
    completed: int = 0
    requeued: int = 0
    rate_limited: int = 0
    failed: int = 0
    deferred: int = 0


class RetryRunSummary(BaseSchema):
    claimed: int = 0
    done: int = 0
    requeued: int = 0
    dead: int = 0
    deferred: int = 0
