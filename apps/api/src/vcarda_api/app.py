"""FastAPI application factory for the vcarda loyalty core."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from vcarda_api.core.settings import settings
from vcarda_api.db.session import async_session
from .api.errors import register_exception_handlers
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import ReconcilerWorker


APP_VERSION = "0.1.0"


def _build_reconciler_worker() -> ReconcilerWorker:
    return ReconcilerWorker(
        session_factory=async_session,
        interval_seconds=settings.reconciler_interval_seconds,
        batch_size=settings.reconciler_batch_size,
        repair=settings.reconciler_repair_enabled,
        trigger_label=settings.reconciler_trigger_label,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = _build_reconciler_worker()
    app.state.reconciler_worker = worker

    # With a broker configured, Celery beat owns the schedule.
    run_in_process = settings.reconciler_worker_enabled and not settings.celery_broker_url
    if run_in_process:
        worker.start()
        logger.info("Reconciler running in-process", interval_seconds=worker.interval_seconds)
    elif settings.reconciler_worker_enabled:
        logger.info("Reconciler scheduled by Celery beat", queue=settings.reconciliation_task_queue)
    else:
        logger.info("Reconciler disabled")

    try:
        yield
    finally:
        if worker.is_running:
            await worker.stop()


def create_app() -> FastAPI:
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="vcarda Loyalty Core API",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    configure_tracing(app, settings, version=APP_VERSION)
    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def liveness() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name, "version": APP_VERSION}

    return app
