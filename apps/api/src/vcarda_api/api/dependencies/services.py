"""Service factories injected into the loyalty endpoints."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.db.session import get_session
from vcarda_api.services.loyalty import PointsService
from vcarda_api.services.tokens import TokenService


async def get_token_service(session: AsyncSession = Depends(get_session)) -> TokenService:
    return TokenService(session)


async def get_points_service(
    session: AsyncSession = Depends(get_session),
    token_service: TokenService = Depends(get_token_service),
) -> PointsService:
    return PointsService(session, token_service=token_service)
