"""Operator endpoints for balance reconciliation runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.api.dependencies.services import get_token_service
from vcarda_api.api.dependencies.session import require_principal
from vcarda_api.db.session import get_session
from vcarda_api.models.reconciliation import ReconciliationRun
from vcarda_api.services.access import AccessPolicy, Principal
from vcarda_api.services.reconciliation import BalanceReconciler
from vcarda_api.services.tokens import TokenService


router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class ReconciliationRunRequest(BaseModel):
    repair: Optional[bool] = Field(None, description="Overrides the configured repair mode for this run")
    batchSize: Optional[int] = Field(None, gt=0, le=5000)


class ReconciliationRunResponse(BaseModel):
    id: UUID
    trigger: str
    status: str
    repair: bool
    cardsScanned: int
    discrepanciesFound: int
    discrepanciesRepaired: int
    tokensArchived: int
    tokensRevoked: int
    notificationsRedelivered: int
    error: Optional[str]
    metadata: dict[str, Any] = Field(default_factory=dict)
    startedAt: datetime
    completedAt: Optional[datetime]


class ReconciliationRunListResponse(BaseModel):
    runs: List[ReconciliationRunResponse]


def _to_run_response(run: ReconciliationRun) -> ReconciliationRunResponse:
    return ReconciliationRunResponse(
        id=run.id,
        trigger=run.trigger,
        status=run.status,
        repair=bool(run.repair),
        cardsScanned=run.cards_scanned or 0,
        discrepanciesFound=run.discrepancies_found or 0,
        discrepanciesRepaired=run.discrepancies_repaired or 0,
        tokensArchived=run.tokens_archived or 0,
        tokensRevoked=run.tokens_revoked or 0,
        notificationsRedelivered=run.notifications_redelivered or 0,
        error=run.error,
        metadata=run.metadata_json or {},
        startedAt=run.started_at,
        completedAt=run.completed_at,
    )


@router.post(
    "/runs",
    response_model=ReconciliationRunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Run a reconciliation sweep now (admin)",
)
async def trigger_reconciliation_run(
    payload: ReconciliationRunRequest | None = None,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> ReconciliationRunResponse:
    AccessPolicy(session).ensure_admin(principal)
    request = payload or ReconciliationRunRequest()
    reconciler = BalanceReconciler(
        session,
        batch_size=request.batchSize,
        repair=request.repair,
        token_service=tokens,
    )
    summary = await reconciler.run(triggered_by=f"api:{principal.user_id}")
    run = await session.get(ReconciliationRun, summary.run_id, populate_existing=True)
    await session.commit()
    return _to_run_response(run)


@router.get("/runs", response_model=ReconciliationRunListResponse, summary="Recent reconciliation runs (admin)")
async def list_reconciliation_runs(
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_session),
) -> ReconciliationRunListResponse:
    AccessPolicy(session).ensure_admin(principal)
    result = await session.execute(
        select(ReconciliationRun).order_by(ReconciliationRun.started_at.desc()).limit(limit)
    )
    runs = list(result.scalars().all())
    return ReconciliationRunListResponse(runs=[_to_run_response(run) for run in runs])
