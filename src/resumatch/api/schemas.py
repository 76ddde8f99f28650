from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class QueueItemResponse(BaseModel):
    id: int
    kind: str
    owner_id: int
    related_id: int
    status: str
    attempt_count: int
    next_retry_at: datetime | None
    last_error: str | None
    created_at: datetime


class QueueKindSummary(BaseModel):
    kind: str
    running: bool
    counts: dict[str, int]


class QueueOverviewResponse(BaseModel):
    queues: list[QueueKindSummary]
