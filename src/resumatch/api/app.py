from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from resumatch.api.routes import router as api_router
from resumatch.config import get_settings
from resumatch.core.workers import WorkerPool
from resumatch.db.init import init_database

logger = logging.getLogger(__name__)


def create_app(worker_pool: WorkerPool | None = None) -> FastAPI:
    settings = get_settings()

    app = FastAPI(title=settings.app_name)
    app.state.worker_pool = worker_pool or WorkerPool(settings=settings)

    @app.on_event("startup")
    def _startup() -> None:
        init_database()
        if settings.workers_enabled:
            app.state.worker_pool.start_all()
        else:
            logger.info("Queue workers disabled by configuration")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.worker_pool.stop_all(settings.shutdown_grace_sec)

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(api_router)
    return app
