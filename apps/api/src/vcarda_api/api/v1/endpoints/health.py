from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.settings import settings
from vcarda_api.db.session import get_session

router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = None


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


async def _probe_store(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Ledger store readiness probe failed", error_type=type(exc).__name__)
        return ComponentStatus(status="error", detail="Database unreachable")
    return ComponentStatus(status="ready")


def _probe_reconciler(request: Request) -> ComponentStatus:
    if not settings.reconciler_worker_enabled:
        return ComponentStatus(status="disabled", detail="Reconciler disabled via settings")
    if settings.celery_broker_url:
        return ComponentStatus(status="ready", detail="Scheduled by Celery beat")
    worker = getattr(request.app.state, "reconciler_worker", None)
    if worker is not None and worker.is_running:
        return ComponentStatus(status="ready")
    return ComponentStatus(status="starting", detail="Reconciler worker not running")


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components = {
        "database": await _probe_store(session),
        "reconciler": _probe_reconciler(request),
    }
    if components["database"].status == "error":
        overall: Literal["ready", "degraded", "error"] = "error"
    elif any(component.status == "starting" for component in components.values()):
        overall = "degraded"
    else:
        overall = "ready"
    return ReadinessPayload(status=overall, components=components)
