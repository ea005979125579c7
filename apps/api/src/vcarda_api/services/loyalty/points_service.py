"""Point award, redemption and balance operations for authenticated callers.

Every mutation follows the same order: authorize, resolve the card, apply the
delta through the :class:`Ledger`, then inform the :class:`Notifier` once the
ledger transaction has committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import InvalidRequest, LoyaltyCoreError, SubjectNotFound, TokenInvalid
from vcarda_api.db.guards import store_guard
from vcarda_api.models.business import LoyaltyProgram
from vcarda_api.models.loyalty import LoyaltyCard, PointTransaction, PointTransactionSource
from vcarda_api.models.token import QrScanLog, TokenSubjectKind
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from vcarda_api.observability.tracing import loyalty_tracer
from vcarda_api.services.access import AccessPolicy, Principal
from vcarda_api.services.notifications import Notifier
from vcarda_api.services.tokens import TokenService

from .identity import IdentityLookup
from .ledger import AwardResult, Ledger
from .provisioning import ProvisioningResolver


_tracer = loyalty_tracer(__name__)


@dataclass(slots=True)
class ScanResult:
    award: AwardResult
    token_id: UUID
    customer_id: UUID
    program_id: UUID


@dataclass(slots=True)
class ScanStats:
    business_id: UUID
    total_scans: int = 0
    successful_scans: int = 0
    failed_scans: int = 0
    points_awarded: int = 0
    unique_customers: int = 0
    failures_by_reason: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "businessId": str(self.business_id),
            "totalScans": self.total_scans,
            "successfulScans": self.successful_scans,
            "failedScans": self.failed_scans,
            "pointsAwarded": self.points_awarded,
            "uniqueCustomers": self.unique_customers,
            "failuresByReason": dict(self.failures_by_reason),
        }


class PointsService:
    """Entry point for award, scan-to-award, redemption and balance reads."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        token_service: TokenService | None = None,
        notifier: Notifier | None = None,
        identity: IdentityLookup | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._observability = observability or get_loyalty_store()
        self._access = AccessPolicy(session)
        self._ledger = Ledger(session, observability=self._observability)
        self._provisioning = ProvisioningResolver(
            session, identity=identity, observability=self._observability
        )
        self._tokens = token_service or TokenService(session, observability=self._observability)
        self._notifier = notifier or Notifier(session, observability=self._observability)

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    async def award_points(
        self,
        principal: Principal,
        *,
        customer_id: UUID,
        program_id: UUID,
        business_id: UUID,
        delta: int,
        idempotency_key: str,
        source: PointTransactionSource | str = PointTransactionSource.MANUAL,
        description: str | None = None,
    ) -> AwardResult:
        await self._access.ensure_business_operator(principal, business_id)
        card_id = await self._provisioning.ensure_card(customer_id, program_id, business_id)
        result = await self._ledger.award(
            card_id,
            delta,
            idempotency_key,
            source,
            description=description,
            performed_by=principal.user_id,
        )
        await self._after_commit(result, customer_id)
        return result

    async def redeem_points(
        self,
        principal: Principal,
        *,
        customer_id: UUID,
        program_id: UUID,
        business_id: UUID,
        points: int,
        idempotency_key: str,
        description: str | None = None,
    ) -> AwardResult:
        """Spend points from an existing card. Cards are never provisioned for redemption."""

        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise InvalidRequest("Redeemed points must be a positive whole number.")
        await self._access.ensure_business_operator(principal, business_id)
        card_id = await self._card_id(customer_id, program_id)
        if card_id is None:
            raise SubjectNotFound("This customer has no card in the program.")
        result = await self._ledger.award(
            card_id,
            -points,
            idempotency_key,
            PointTransactionSource.REDEMPTION,
            description=description,
            performed_by=principal.user_id,
        )
        await self._after_commit(result, customer_id)
        return result

    async def scan_token(
        self,
        principal: Principal,
        *,
        token_blob: str,
        business_id: UUID,
        idempotency_key: str,
        program_id: UUID | None = None,
        customer_id: UUID | None = None,
        points: int | None = None,
    ) -> ScanResult:
        """Verify and consume a presented token, then award points for it.

        The award is keyed by the token id, so a token credits at most once
        whichever request consumed it. Every attempt lands in the scan log.
        """

        with _tracer.start_as_current_span("loyalty.scan_token") as span:
            span.set_attribute("vcarda.business_id", str(business_id))
            await self._access.ensure_business_operator(principal, business_id)

            token_id: UUID | None = None
            resolved_customer = customer_id
            resolved_program = program_id
            try:
                payload = await self._tokens.authenticate(token_blob)
                token_id = payload.token_id
                try:
                    # single-use state is checked before anything is provisioned
                    await self._tokens.ensure_usable(payload, consumer_key=idempotency_key)
                except TokenInvalid as exc:
                    self._observability.record_token_outcome(exc.kind)
                    raise
                if payload.subject_kind == TokenSubjectKind.PROMO_CODE.value:
                    if customer_id is None:
                        raise InvalidRequest("Promo codes must be scanned for a customer.")
                    source = PointTransactionSource.PROMOTIONAL
                else:
                    resolved_customer = payload.subject_id
                    source = PointTransactionSource.SCAN
                if payload.program_id is not None:
                    if program_id is not None and program_id != payload.program_id:
                        raise InvalidRequest("This code belongs to a different program.")
                    resolved_program = payload.program_id
                if resolved_program is None:
                    raise InvalidRequest("A program is required to award points for this code.")

                amount = points if points is not None else await self._points_per_scan(resolved_program)
                # provision before consuming so a vanished subject leaves the token usable
                card_id = await self._provisioning.ensure_card(resolved_customer, resolved_program, business_id)
                await self._tokens.consume(payload, consumer_key=idempotency_key)
                result = await self._ledger.award(
                    card_id,
                    amount,
                    f"token:{payload.token_id}",
                    source,
                    description="QR code scan",
                    performed_by=principal.user_id,
                    token_id=payload.token_id,
                )
            except LoyaltyCoreError as exc:
                await self._log_scan(
                    principal,
                    business_id=business_id,
                    token_id=token_id,
                    customer_id=resolved_customer,
                    program_id=resolved_program,
                    points=0,
                    failure=exc.kind,
                )
                raise

            await self._after_commit(result, resolved_customer)
            await self._log_scan(
                principal,
                business_id=business_id,
                token_id=payload.token_id,
                customer_id=resolved_customer,
                program_id=resolved_program,
                points=result.delta if result.applied else 0,
                failure=None,
            )
            return ScanResult(
                award=result,
                token_id=payload.token_id,
                customer_id=resolved_customer,
                program_id=resolved_program,
            )

    async def get_balance(self, principal: Principal, *, customer_id: UUID, program_id: UUID) -> int:
        self._access.ensure_self_or_admin(principal, customer_id)
        return await self._ledger.balance(customer_id, program_id)

    async def history(
        self,
        principal: Principal,
        *,
        customer_id: UUID,
        program_id: UUID,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[PointTransaction], Tuple[datetime, UUID] | None]:
        self._access.ensure_self_or_admin(principal, customer_id)
        card_id = await self._card_id(customer_id, program_id)
        if card_id is None:
            return [], None
        return await self._ledger.history(card_id, limit=limit, cursor=cursor)

    async def scan_stats(
        self,
        principal: Principal,
        *,
        business_id: UUID,
        since: datetime | None = None,
    ) -> ScanStats:
        await self._access.ensure_business_operator(principal, business_id)
        filters = [QrScanLog.business_id == business_id]
        if since is not None:
            filters.append(QrScanLog.created_at >= since)

        async with store_guard(self._db, "scan_log.stats"):
            totals = (
                await self._db.execute(
                    select(
                        func.count(QrScanLog.id),
                        func.coalesce(func.sum(case((QrScanLog.success.is_(True), 1), else_=0)), 0),
                        func.coalesce(func.sum(QrScanLog.points_awarded), 0),
                        func.count(func.distinct(QrScanLog.customer_id)),
                    ).where(*filters)
                )
            ).one()
            reasons = (
                await self._db.execute(
                    select(QrScanLog.failure_reason, func.count(QrScanLog.id))
                    .where(*filters, QrScanLog.success.is_(False))
                    .group_by(QrScanLog.failure_reason)
                )
            ).all()
            await self._db.commit()

        total, successful, points_awarded, unique_customers = totals
        return ScanStats(
            business_id=business_id,
            total_scans=int(total),
            successful_scans=int(successful),
            failed_scans=int(total) - int(successful),
            points_awarded=int(points_awarded),
            unique_customers=int(unique_customers),
            failures_by_reason={reason or "unknown": int(count) for reason, count in reasons},
        )

    async def _card_id(self, customer_id: UUID, program_id: UUID) -> UUID | None:
        async with store_guard(self._db, "points.card_lookup"):
            card_id = await self._db.scalar(
                select(LoyaltyCard.id).where(
                    LoyaltyCard.customer_id == customer_id,
                    LoyaltyCard.program_id == program_id,
                )
            )
            await self._db.commit()
        return card_id

    async def _points_per_scan(self, program_id: UUID) -> int:
        async with store_guard(self._db, "points.program_lookup"):
            per_scan = await self._db.scalar(
                select(LoyaltyProgram.points_per_scan).where(LoyaltyProgram.id == program_id)
            )
            await self._db.commit()
        if per_scan is None:
            raise SubjectNotFound("Loyalty program not found for this business.")
        return int(per_scan)

    async def _after_commit(self, result: AwardResult, customer_id: UUID) -> None:
        if not result.applied:
            return
        await self._notifier.notify_awarded(
            card_id=result.card_id,
            customer_id=customer_id,
            delta=result.delta,
            new_balance=result.new_balance,
        )

    async def _log_scan(
        self,
        principal: Principal,
        *,
        business_id: UUID,
        token_id: UUID | None,
        customer_id: UUID | None,
        program_id: UUID | None,
        points: int,
        failure: str | None,
    ) -> None:
        self._db.add(
            QrScanLog(
                token_id=token_id,
                business_id=business_id,
                scanned_by=principal.user_id,
                customer_id=customer_id,
                program_id=program_id,
                points_awarded=points,
                success=failure is None,
                failure_reason=failure,
                created_at=datetime.now(timezone.utc),
            )
        )
        try:
            await self._db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write scan log", business_id=str(business_id))
            try:
                await self._db.rollback()
            except SQLAlchemyError:
                logger.debug("Rollback after scan log failure did not complete")


__all__ = ["PointsService", "ScanResult", "ScanStats"]
