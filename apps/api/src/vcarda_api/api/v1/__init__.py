from fastapi import APIRouter

from .endpoints import (
    health,
    observability,
    points,
    reconciliation,
    tokens,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(tokens.router)
router.include_router(points.router)
router.include_router(reconciliation.router)
router.include_router(observability.router)
