from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from resumatch.config import Settings, get_settings
from resumatch.core.ratelimit import compute_next_retry
from resumatch.db.base import utcnow
from resumatch.db.dialect import upsert_insert
from resumatch.db.models import QueueItem, QueueKind, QueueStatus

logger = logging.getLogger(__name__)

ELIGIBLE_STATUSES = (QueueStatus.PENDING, QueueStatus.RETRY_SCHEDULED)
MAX_ERROR_CHARS = 2000


class RetryQueue:
    """Durable per-kind work queue with one row per unit of work."""

    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def enqueue(self, kind: QueueKind | str, owner_id: int, related_id: int = 0) -> QueueItem:
        """Upsert the unit; an existing row (dormant included) is reset to pending."""
        kind = QueueKind(kind)
        statement = (
            upsert_insert(self.session, QueueItem)
            .values(
                kind=kind,
                owner_id=owner_id,
                related_id=related_id,
                status=QueueStatus.PENDING,
                attempt_count=0,
                next_retry_at=None,
                last_error=None,
                created_at=utcnow(),
            )
            .on_conflict_do_update(
                index_elements=["kind", "owner_id", "related_id"],
                set_={
                    "status": QueueStatus.PENDING,
                    "attempt_count": 0,
                    "next_retry_at": None,
                    "last_error": None,
                },
            )
        )
        self.session.execute(statement)
        self.session.commit()

        item = self.get_item_for_unit(kind, owner_id, related_id)
        if item is None:
            raise RuntimeError(f"queue row for {kind.value}:{owner_id}:{related_id} missing after upsert")
        logger.info("Queued %s owner=%s related=%s", kind.value, owner_id, related_id)
        return item

    def get_item(self, item_id: int) -> QueueItem | None:
        return self.session.get(QueueItem, item_id)

    def get_item_for_unit(self, kind: QueueKind | str, owner_id: int, related_id: int = 0) -> QueueItem | None:
        statement = select(QueueItem).where(
            and_(
                QueueItem.kind == QueueKind(kind),
                QueueItem.owner_id == owner_id,
                QueueItem.related_id == related_id,
            )
        )
        return self.session.scalar(statement)

    def get_eligible(self, kind: QueueKind | str, now: datetime | None = None) -> list[QueueItem]:
        now = now or utcnow()
        statement = (
            select(QueueItem)
            .where(
                and_(
                    QueueItem.kind == QueueKind(kind),
                    QueueItem.status.in_(ELIGIBLE_STATUSES),
                    or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now),
                )
            )
            .order_by(QueueItem.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def record_success(self, item_id: int) -> bool:
        result = self.session.execute(delete(QueueItem).where(QueueItem.id == item_id))
        self.session.commit()
        return bool(result.rowcount)

    def record_failure(
        self,
        item_id: int,
        error: BaseException | str,
        max_attempts: int,
        now: datetime | None = None,
    ) -> QueueStatus:
        """
        Count one failed attempt and reschedule or park the row.

        Below the ceiling the row becomes ``retry_scheduled`` with a backoff
        time taken from the error's reset hints. Reaching the ceiling makes it
        ``dormant`` with a far-future retry time; it is never deleted here.
        """
        item = self.session.get(QueueItem, item_id)
        if item is None:
            raise ValueError(f"queue item {item_id} not found")

        now = now or utcnow()
        attempts = item.attempt_count + 1
        item.attempt_count = attempts
        item.last_error = str(error)[:MAX_ERROR_CHARS]

        if attempts >= max_attempts:
            item.status = QueueStatus.DORMANT
            item.next_retry_at = now + timedelta(days=self.settings.dormant_retry_days)
        else:
            item.status = QueueStatus.RETRY_SCHEDULED
            item.next_retry_at = compute_next_retry(
                attempts,
                error if isinstance(error, BaseException) else None,
                now=now,
            )

        self.session.commit()
        return item.status

    def list_items(
        self,
        kind: QueueKind | str | None = None,
        status: QueueStatus | str | None = None,
    ) -> list[QueueItem]:
        statement = select(QueueItem)
        if kind is not None:
            statement = statement.where(QueueItem.kind == QueueKind(kind))
        if status is not None:
            statement = statement.where(QueueItem.status == QueueStatus(status))
        statement = statement.order_by(QueueItem.kind.asc(), QueueItem.id.asc())
        return list(self.session.scalars(statement).all())

    def counts(self) -> dict[str, dict[str, int]]:
        """Row counts per kind and status; every kind and status is present."""
        totals: dict[str, dict[str, int]] = defaultdict(dict)
        for kind in QueueKind:
            for status in QueueStatus:
                totals[kind.value][status.value] = 0

        statement = select(QueueItem.kind, QueueItem.status, func.count(QueueItem.id)).group_by(
            QueueItem.kind, QueueItem.status
        )
        for kind, status, count in self.session.execute(statement).all():
            totals[QueueKind(kind).value][QueueStatus(status).value] = int(count)
        return dict(totals)
