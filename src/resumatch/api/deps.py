from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from resumatch.core.workers import WorkerPool
from resumatch.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_worker_pool(request: Request) -> WorkerPool:
    return request.app.state.worker_pool
