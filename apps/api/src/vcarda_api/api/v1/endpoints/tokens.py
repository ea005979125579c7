"""Endpoints for issuing, validating and administering signed QR tokens."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.api.dependencies.services import get_token_service
from vcarda_api.api.dependencies.session import require_principal
from vcarda_api.db.session import get_session
from vcarda_api.models.token import TokenSubjectKind
from vcarda_api.services.access import AccessPolicy, Principal
from vcarda_api.services.tokens import TokenDescription, TokenService


router = APIRouter(prefix="/tokens", tags=["tokens"])


class TokenIssueRequest(BaseModel):
    subjectKind: Literal["customer", "program_card", "promo_code"]
    subjectId: UUID
    programId: Optional[UUID] = Field(None, description="Program the token is bound to")
    ttlSeconds: Optional[int] = Field(None, description="Requested lifetime; clamped to the configured maximum")


class TokenIssueResponse(BaseModel):
    tokenId: UUID
    token: str
    subjectKind: str
    subjectId: UUID
    programId: Optional[UUID]
    expiresAt: datetime


class TokenValidateRequest(BaseModel):
    token: str = Field(..., min_length=1, description="Token blob as read from the QR code")


class TokenValidateResponse(BaseModel):
    valid: bool
    tokenId: Optional[UUID] = None
    subjectKind: Optional[str] = None
    subjectId: Optional[UUID] = None
    programId: Optional[UUID] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class TokenRevokeRequest(BaseModel):
    reason: str = Field("manual", min_length=1, max_length=64)


class TokenStatusResponse(BaseModel):
    tokenId: UUID
    subjectKind: str
    subjectId: UUID
    programId: Optional[UUID]
    status: str
    issuedAt: datetime
    expiresAt: datetime
    consumedAt: Optional[datetime]
    revokedAt: Optional[datetime]
    revokeReason: Optional[str]
    archived: bool


def _to_status_response(description: TokenDescription) -> TokenStatusResponse:
    return TokenStatusResponse(
        tokenId=description.token_id,
        subjectKind=description.subject_kind,
        subjectId=description.subject_id,
        programId=description.program_id,
        status=description.status,
        issuedAt=description.issued_at,
        expiresAt=description.expires_at,
        consumedAt=description.consumed_at,
        revokedAt=description.revoked_at,
        revokeReason=description.revoke_reason,
        archived=description.archived,
    )


@router.post(
    "",
    response_model=TokenIssueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a signed single-use token",
)
async def issue_token(
    payload: TokenIssueRequest,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> TokenIssueResponse:
    policy = AccessPolicy(session)
    if payload.subjectKind == TokenSubjectKind.PROMO_CODE.value:
        policy.ensure_admin(principal)
    else:
        policy.ensure_self_or_admin(principal, payload.subjectId)

    issued = await tokens.issue(
        payload.subjectKind,
        payload.subjectId,
        ttl_seconds=payload.ttlSeconds,
        program_id=payload.programId,
    )
    return TokenIssueResponse(
        tokenId=issued.token_id,
        token=issued.blob,
        subjectKind=issued.subject_kind,
        subjectId=issued.subject_id,
        programId=issued.program_id,
        expiresAt=issued.expires_at,
    )


@router.post("/validate", response_model=TokenValidateResponse, summary="Validate a token without consuming it")
async def validate_token(
    payload: TokenValidateRequest,
    principal: Principal = Depends(require_principal),
    tokens: TokenService = Depends(get_token_service),
) -> TokenValidateResponse:
    result = await tokens.validate(payload.token)
    return TokenValidateResponse(
        valid=result.valid,
        tokenId=result.token_id,
        subjectKind=result.subject_kind,
        subjectId=result.subject_id,
        programId=result.program_id,
        reason=result.reason,
        message=result.message,
    )


@router.get("/{token_id}", response_model=TokenStatusResponse, summary="Describe a token (admin)")
async def get_token(
    token_id: UUID,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> TokenStatusResponse:
    AccessPolicy(session).ensure_admin(principal)
    description = await tokens.describe(token_id)
    return _to_status_response(description)


@router.post("/{token_id}/revoke", response_model=TokenStatusResponse, summary="Revoke a token (admin)")
async def revoke_token(
    token_id: UUID,
    payload: TokenRevokeRequest | None = None,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> TokenStatusResponse:
    AccessPolicy(session).ensure_admin(principal)
    reason = payload.reason if payload else "manual"
    await tokens.revoke(token_id, reason=reason)
    description = await tokens.describe(token_id)
    return _to_status_response(description)
