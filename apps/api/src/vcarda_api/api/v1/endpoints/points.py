"""API endpoints for awarding, scanning, redeeming and reading loyalty points."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from vcarda_api.api.dependencies.services import get_points_service
from vcarda_api.api.dependencies.session import require_principal
from vcarda_api.core.errors import InvalidRequest
from vcarda_api.models.loyalty import PointTransaction, PointTransactionSource
from vcarda_api.services.access import Principal
from vcarda_api.services.loyalty import (
    AwardResult,
    PointsService,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/points", tags=["points"])


class AwardRequest(BaseModel):
    customerId: UUID
    programId: UUID
    businessId: UUID
    delta: int = Field(..., description="Signed point change; zero is rejected")
    idempotencyKey: Optional[str] = Field(
        None, max_length=128, description="Falls back to the Idempotency-Key header"
    )
    source: Literal["manual", "promotional", "adjustment"] = "manual"
    description: Optional[str] = Field(None, max_length=500)


class ScanRequest(BaseModel):
    token: str = Field(..., min_length=1, description="Token blob as read from the QR code")
    businessId: UUID
    programId: Optional[UUID] = Field(None, description="Required when the token is not bound to a program")
    customerId: Optional[UUID] = Field(None, description="Required for promo code tokens")
    points: Optional[int] = Field(None, gt=0, description="Overrides the program's points per scan")
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class RedeemRequest(BaseModel):
    customerId: UUID
    programId: UUID
    businessId: UUID
    points: int = Field(..., gt=0)
    idempotencyKey: Optional[str] = Field(None, max_length=128)
    description: Optional[str] = Field(None, max_length=500)


class AwardResponse(BaseModel):
    cardId: UUID
    transactionId: UUID
    delta: int
    newBalance: int
    applied: bool


class ScanResponse(AwardResponse):
    tokenId: UUID
    customerId: UUID
    programId: UUID


class BalanceResponse(BaseModel):
    customerId: UUID
    programId: UUID
    balance: int


class TransactionResponse(BaseModel):
    id: UUID
    delta: int
    balanceAfter: Optional[int]
    source: str
    description: Optional[str]
    tokenId: Optional[UUID]
    createdAt: datetime


class HistoryResponse(BaseModel):
    entries: List[TransactionResponse]
    nextCursor: Optional[str]


class ScanStatsResponse(BaseModel):
    businessId: UUID
    totalScans: int
    successfulScans: int
    failedScans: int
    pointsAwarded: int
    uniqueCustomers: int
    failuresByReason: dict[str, int]


def _resolve_idempotency_key(body_key: str | None, header_key: str | None) -> str:
    key = (body_key or header_key or "").strip()
    if not key:
        raise InvalidRequest("An idempotency key is required.")
    return key


def _to_award_response(result: AwardResult) -> AwardResponse:
    return AwardResponse(
        cardId=result.card_id,
        transactionId=result.transaction_id,
        delta=result.delta,
        newBalance=result.new_balance,
        applied=result.applied,
    )


def _to_transaction_response(entry: PointTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=entry.id,
        delta=entry.delta,
        balanceAfter=entry.balance_after,
        source=entry.source,
        description=entry.description,
        tokenId=entry.token_id,
        createdAt=entry.created_at,
    )


@router.post("/award", response_model=AwardResponse, summary="Award or adjust points for a customer")
async def award_points(
    payload: AwardRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> AwardResponse:
    result = await service.award_points(
        principal,
        customer_id=payload.customerId,
        program_id=payload.programId,
        business_id=payload.businessId,
        delta=payload.delta,
        idempotency_key=_resolve_idempotency_key(payload.idempotencyKey, idempotency_key),
        source=PointTransactionSource(payload.source),
        description=payload.description,
    )
    return _to_award_response(result)


@router.post("/scan", response_model=ScanResponse, summary="Consume a scanned token and award its points")
async def scan_token(
    payload: ScanRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> ScanResponse:
    result = await service.scan_token(
        principal,
        token_blob=payload.token,
        business_id=payload.businessId,
        idempotency_key=_resolve_idempotency_key(payload.idempotencyKey, idempotency_key),
        program_id=payload.programId,
        customer_id=payload.customerId,
        points=payload.points,
    )
    award = result.award
    return ScanResponse(
        cardId=award.card_id,
        transactionId=award.transaction_id,
        delta=award.delta,
        newBalance=award.new_balance,
        applied=award.applied,
        tokenId=result.token_id,
        customerId=result.customer_id,
        programId=result.program_id,
    )


@router.post("/redeem", response_model=AwardResponse, summary="Redeem points from a customer's card")
async def redeem_points(
    payload: RedeemRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> AwardResponse:
    result = await service.redeem_points(
        principal,
        customer_id=payload.customerId,
        program_id=payload.programId,
        business_id=payload.businessId,
        points=payload.points,
        idempotency_key=_resolve_idempotency_key(payload.idempotencyKey, idempotency_key),
        description=payload.description,
    )
    return _to_award_response(result)


@router.get("/balance", response_model=BalanceResponse, summary="Current balance for a customer and program")
async def get_balance(
    customer_id: UUID = Query(..., alias="customerId"),
    program_id: UUID = Query(..., alias="programId"),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> BalanceResponse:
    balance = await service.get_balance(principal, customer_id=customer_id, program_id=program_id)
    return BalanceResponse(customerId=customer_id, programId=program_id, balance=balance)


@router.get("/history", response_model=HistoryResponse, summary="Newest-first ledger history")
async def get_history(
    customer_id: UUID = Query(..., alias="customerId"),
    program_id: UUID = Query(..., alias="programId"),
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> HistoryResponse:
    decoded = decode_time_uuid_cursor(cursor) if cursor else None
    entries, next_cursor = await service.history(
        principal,
        customer_id=customer_id,
        program_id=program_id,
        limit=limit,
        cursor=decoded,
    )
    return HistoryResponse(
        entries=[_to_transaction_response(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/scan-stats", response_model=ScanStatsResponse, summary="Scan statistics for a business")
async def get_scan_stats(
    business_id: UUID = Query(..., alias="businessId"),
    since: datetime | None = Query(None),
    principal: Principal = Depends(require_principal),
    service: PointsService = Depends(get_points_service),
) -> ScanStatsResponse:
    stats = await service.scan_stats(principal, business_id=business_id, since=since)
    return ScanStatsResponse(**stats.as_dict())
