"""Observability endpoints for the loyalty core."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from vcarda_api.api.dependencies.security import require_internal_api_key
from vcarda_api.observability.loyalty import get_loyalty_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_internal_api_key)],
    summary="Loyalty core observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Retrieve aggregated ledger, token and reconciler counters (requires internal API key)."""
    return get_loyalty_store().snapshot().as_dict()
