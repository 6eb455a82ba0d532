from __future__ import annotations

import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from exam_engine.api.router import router
from exam_engine.errors import EngineError
from exam_engine.observability import configure_logging, init_otel, metrics
from exam_engine.settings import settings
from exam_engine.storage.mongo import MongoAttemptRepository
from exam_engine.wiring import get_engine, get_repo
from exam_engine.workers.reaper import run_reaper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging(settings.log_level)
    logger.info(f"{settings.app_name} starting ({settings.env}, storage={settings.storage_backend})")

    repo = get_repo()
    if isinstance(repo, MongoAttemptRepository):
        await repo.ensure_indexes()

    stop_event = asyncio.Event()
    reaper_task = None
    if settings.reaper_enabled:
        reaper_task = asyncio.create_task(run_reaper(get_engine(), settings.reaper_interval_seconds, stop_event))

    yield

    stop_event.set()
    if reaper_task is not None:
        await reaper_task
    logger.info("Shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    init_otel(
        app=app,
        enabled=settings.observability_enabled,
        service_name=settings.otel_service_name,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        console_exporter=settings.otel_exporter_console,
        sample_rate=settings.otel_sample_rate,
    )

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message, **exc.details()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled exception: {str(exc)}")
        logger.error(f"Traceback: {''.join(traceback.format_tb(exc.__traceback__))}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.env}

    @app.get("/metrics/engine")
    async def engine_metrics() -> dict:
        return metrics.get_stats()

    return app


app = create_app()
