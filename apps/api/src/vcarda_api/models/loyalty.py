"""Enrollment, card and ledger models.

``LoyaltyCard.points_balance`` is the canonical balance. The enrollment totals
and :class:`CardBalanceView` are derived copies maintained outside the award
path.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from vcarda_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PointTransactionSource(str, Enum):
    """Where a balance mutation originated."""

    SCAN = "scan"
    MANUAL = "manual"
    PROMOTIONAL = "promotional"
    REDEMPTION = "redemption"
    ADJUSTMENT = "adjustment"


class ProgramEnrollment(Base):
    __tablename__ = "program_enrollments"
    __table_args__ = (
        UniqueConstraint("customer_id", "program_id", name="uq_program_enrollments_customer_program"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=EnrollmentStatus.ACTIVE.value, server_default=EnrollmentStatus.ACTIVE.value)
    current_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    card = relationship("LoyaltyCard", back_populates="enrollment", uselist=False)


class LoyaltyCard(Base):
    __tablename__ = "loyalty_cards"
    __table_args__ = (
        UniqueConstraint("customer_id", "program_id", name="uq_loyalty_cards_customer_program"),
        CheckConstraint("points_balance >= 0", name="ck_loyalty_cards_points_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False, index=True)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("program_enrollments.id"), nullable=False, unique=True)
    card_number = Column(String(32), nullable=False, unique=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    enrollment = relationship("ProgramEnrollment", back_populates="card")
    transactions = relationship("PointTransaction", back_populates="card")


class CardBalanceView(Base):
    """Read cache for dashboards, refreshed from ``loyalty_cards.points_balance``."""

    __tablename__ = "card_balance_views"

    card_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_cards.id", ondelete="CASCADE"), primary_key=True)
    customer_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), nullable=False)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    refreshed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PointTransaction(Base):
    """Immutable ledger row. ``(card_id, idempotency_key)`` guards against replays."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        UniqueConstraint("card_id", "idempotency_key", name="uq_point_transactions_card_idempotency_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    card_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_cards.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    source = Column(String(16), nullable=False)
    idempotency_key = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    performed_by = Column(UUID(as_uuid=True), nullable=True)
    token_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    card = relationship("LoyaltyCard", back_populates="transactions")
