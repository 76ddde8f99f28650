from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from resumatch.api.deps import get_db, get_worker_pool
from resumatch.api.schemas import QueueItemResponse, QueueKindSummary, QueueOverviewResponse
from resumatch.core.workers import WorkerPool
from resumatch.db.base import as_utc
from resumatch.db.models import QueueItem, QueueKind
from resumatch.db.queue import RetryQueue

router = APIRouter(prefix="/api", tags=["api"])


def _parse_kind(kind: str) -> QueueKind:
    try:
        return QueueKind(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown queue kind '{kind}'") from exc


def _item_response(item: QueueItem) -> QueueItemResponse:
    return QueueItemResponse(
        id=item.id,
        kind=QueueKind(item.kind).value,
        owner_id=item.owner_id,
        related_id=item.related_id,
        status=item.status.value,
        attempt_count=item.attempt_count,
        next_retry_at=as_utc(item.next_retry_at),
        last_error=item.last_error,
        created_at=as_utc(item.created_at),
    )


@router.get("/queues", response_model=QueueOverviewResponse)
def queue_overview(
    db: Session = Depends(get_db),
    pool: WorkerPool = Depends(get_worker_pool),
) -> QueueOverviewResponse:
    counts = RetryQueue(db).counts()
    return QueueOverviewResponse(
        queues=[
            QueueKindSummary(kind=kind.value, running=pool.is_running(kind), counts=counts[kind.value])
            for kind in QueueKind
        ]
    )


@router.get("/queues/{kind}", response_model=list[QueueItemResponse])
def list_queue(kind: str, status: str | None = None, db: Session = Depends(get_db)) -> list[QueueItemResponse]:
    queue_kind = _parse_kind(kind)
    try:
        rows = RetryQueue(db).list_items(kind=queue_kind, status=status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown queue status '{status}'") from exc
    return [_item_response(row) for row in rows]
