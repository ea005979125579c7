"""Exactly-once point ledger.

The ledger is the only writer of ``loyalty_cards.points_balance``. Each call to
:meth:`Ledger.award` runs in its own transaction: insert the transaction row
(the ``(card_id, idempotency_key)`` unique constraint is the replay guard),
apply the delta with a guarded in-place increment, then mirror the new total
into the enrollment. A replayed key returns the recorded result untouched.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence, Tuple
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import InsufficientBalance, InvalidRequest, StoreUnavailable, SubjectNotFound
from vcarda_api.db.guards import store_guard
from vcarda_api.models.business import LoyaltyProgram
from vcarda_api.models.loyalty import LoyaltyCard, PointTransaction, PointTransactionSource, ProgramEnrollment
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

MAX_IDEMPOTENCY_KEY_LENGTH = 128

_POSITIVE_SOURCES = {PointTransactionSource.SCAN, PointTransactionSource.PROMOTIONAL}


@dataclass(slots=True)
class AwardResult:
    card_id: UUID
    transaction_id: UUID
    new_balance: int
    applied: bool
    delta: int


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except (ValueError, UnicodeError) as exc:
        raise InvalidRequest("Invalid pagination cursor.") from exc


def _validate_award(delta: int, idempotency_key: str, source: PointTransactionSource) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidRequest("Point amounts must be whole numbers.")
    if delta == 0:
        raise InvalidRequest("Point amount must not be zero.")
    if not idempotency_key or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidRequest("An idempotency key of at most 128 characters is required.")
    if source in _POSITIVE_SOURCES and delta < 0:
        raise InvalidRequest(f"{source.value} awards must be positive.")
    if source is PointTransactionSource.REDEMPTION and delta > 0:
        raise InvalidRequest("Redemptions must be negative.")


class Ledger:
    """System of record for card balances."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._observability = observability or get_loyalty_store()

    async def _find_transaction(self, card_id: UUID, idempotency_key: str) -> PointTransaction | None:
        stmt = (
            select(PointTransaction)
            .where(
                PointTransaction.card_id == card_id,
                PointTransaction.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        return await self._db.scalar(stmt)

    def _replay(self, existing: PointTransaction) -> AwardResult:
        self._observability.record_award(source=existing.source, delta=existing.delta, applied=False)
        logger.info(
            "Replayed loyalty award",
            card_id=str(existing.card_id),
            transaction_id=str(existing.id),
            idempotency_key=existing.idempotency_key,
        )
        return AwardResult(
            card_id=existing.card_id,
            transaction_id=existing.id,
            new_balance=int(existing.balance_after or 0),
            applied=False,
            delta=existing.delta,
        )

    async def award(
        self,
        card_id: UUID,
        delta: int,
        idempotency_key: str,
        source: PointTransactionSource | str,
        *,
        description: str | None = None,
        performed_by: UUID | None = None,
        token_id: UUID | None = None,
    ) -> AwardResult:
        """Apply ``delta`` to the card exactly once per ``idempotency_key``."""

        source = PointTransactionSource(source)
        _validate_award(delta, idempotency_key, source)

        async with store_guard(self._db, "ledger.award"):
            existing = await self._find_transaction(card_id, idempotency_key)
            if existing is not None:
                await self._db.commit()
                return self._replay(existing)

            row = (
                await self._db.execute(
                    select(LoyaltyCard.enrollment_id, LoyaltyProgram.max_points_per_award)
                    .join(LoyaltyProgram, LoyaltyProgram.id == LoyaltyCard.program_id)
                    .where(LoyaltyCard.id == card_id)
                )
            ).one_or_none()
            if row is None:
                await self._db.rollback()
                raise SubjectNotFound("Loyalty card not found.")
            enrollment_id, max_points = row
            if max_points and abs(delta) > max_points:
                await self._db.rollback()
                raise InvalidRequest(f"Cannot change more than {max_points} points at once.")

            transaction_id = uuid4()
            transaction = PointTransaction(
                id=transaction_id,
                card_id=card_id,
                delta=delta,
                source=source.value,
                idempotency_key=idempotency_key,
                description=description,
                performed_by=performed_by,
                token_id=token_id,
            )
            self._db.add(transaction)
            try:
                await self._db.flush()
            except IntegrityError:
                await self._db.rollback()
                logger.warning(
                    "Concurrent award with the same idempotency key; re-reading",
                    card_id=str(card_id),
                    idempotency_key=idempotency_key,
                )
                winner = await self._find_transaction(card_id, idempotency_key)
                await self._db.commit()
                if winner is None:
                    raise StoreUnavailable()
                return self._replay(winner)

            result = await self._db.execute(
                update(LoyaltyCard)
                .where(LoyaltyCard.id == card_id, LoyaltyCard.points_balance + delta >= 0)
                .values(points_balance=LoyaltyCard.points_balance + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                balance = await self._db.scalar(
                    select(LoyaltyCard.points_balance).where(LoyaltyCard.id == card_id)
                )
                await self._db.rollback()
                self._observability.record_insufficient_balance()
                logger.info(
                    "Rejected redemption exceeding balance",
                    card_id=str(card_id),
                    balance=balance,
                    requested=-delta,
                )
                raise InsufficientBalance(balance=int(balance or 0), requested=-delta)

            new_balance = int(
                await self._db.scalar(select(LoyaltyCard.points_balance).where(LoyaltyCard.id == card_id))
            )
            transaction.balance_after = new_balance

            await self._db.execute(
                update(ProgramEnrollment)
                .where(ProgramEnrollment.id == enrollment_id)
                .values(
                    current_points=new_balance,
                    total_points_earned=ProgramEnrollment.total_points_earned + max(delta, 0),
                    total_points_redeemed=ProgramEnrollment.total_points_redeemed + max(-delta, 0),
                    last_activity_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()

        self._observability.record_award(source=source.value, delta=delta, applied=True)
        logger.info(
            "Applied loyalty points",
            card_id=str(card_id),
            transaction_id=str(transaction_id),
            delta=delta,
            new_balance=new_balance,
            source=source.value,
        )
        return AwardResult(
            card_id=card_id,
            transaction_id=transaction_id,
            new_balance=new_balance,
            applied=True,
            delta=delta,
        )

    async def card_balance(self, card_id: UUID) -> int:
        async with store_guard(self._db, "ledger.card_balance"):
            balance = await self._db.scalar(
                select(LoyaltyCard.points_balance).where(LoyaltyCard.id == card_id)
            )
            await self._db.commit()
        if balance is None:
            raise SubjectNotFound("Loyalty card not found.")
        return int(balance)

    async def balance(self, customer_id: UUID, program_id: UUID) -> int:
        """Canonical balance for a customer in a program; zero before the first award."""

        async with store_guard(self._db, "ledger.balance"):
            balance = await self._db.scalar(
                select(LoyaltyCard.points_balance).where(
                    LoyaltyCard.customer_id == customer_id,
                    LoyaltyCard.program_id == program_id,
                )
            )
            await self._db.commit()
        return int(balance or 0)

    async def history(
        self,
        card_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        sources: Sequence[PointTransactionSource] | None = None,
    ) -> tuple[list[PointTransaction], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of ledger transactions for a card."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(PointTransaction)
            .where(PointTransaction.card_id == card_id)
            .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
        )
        if sources:
            stmt = stmt.where(PointTransaction.source.in_([source.value for source in sources]))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    PointTransaction.created_at < cursor_time,
                    and_(
                        PointTransaction.created_at == cursor_time,
                        PointTransaction.id < cursor_id,
                    ),
                )
            )

        async with store_guard(self._db, "ledger.history"):
            result = await self._db.execute(stmt.limit(bounded_limit + 1))
            rows = list(result.scalars().all())
            await self._db.commit()

        has_more = len(rows) > bounded_limit
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if has_more and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor

    async def ledger_sum(self, card_id: UUID) -> int:
        async with store_guard(self._db, "ledger.sum"):
            total = await self._db.scalar(
                select(func.coalesce(func.sum(PointTransaction.delta), 0)).where(
                    PointTransaction.card_id == card_id
                )
            )
            await self._db.commit()
        return int(total or 0)


__all__ = [
    "AwardResult",
    "Ledger",
    "MAX_IDEMPOTENCY_KEY_LENGTH",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
