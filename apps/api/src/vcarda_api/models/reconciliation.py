"""Bookkeeping for balance reconciliation sweeps."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from vcarda_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationRunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DiscrepancyKind(str, Enum):
    VIEW_MISMATCH = "view_mismatch"
    VIEW_MISSING = "view_missing"
    ENROLLMENT_MISMATCH = "enrollment_mismatch"
    LEDGER_SUM_MISMATCH = "ledger_sum_mismatch"
    DUPLICATE_CARD = "duplicate_card"


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    trigger = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=ReconciliationRunStatus.RUNNING.value)
    repair = Column(Boolean, nullable=False, default=False)
    cards_scanned = Column(Integer, nullable=False, default=0)
    discrepancies_found = Column(Integer, nullable=False, default=0)
    discrepancies_repaired = Column(Integer, nullable=False, default=0)
    tokens_archived = Column(Integer, nullable=False, default=0)
    tokens_revoked = Column(Integer, nullable=False, default=0)
    notifications_redelivered = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    discrepancies = relationship(
        "BalanceDiscrepancy", back_populates="run", cascade="all, delete-orphan"
    )


class BalanceDiscrepancy(Base):
    __tablename__ = "balance_discrepancies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("reconciliation_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    card_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    kind = Column(String(32), nullable=False)
    canonical_value = Column(Integer, nullable=True)
    observed_value = Column(Integer, nullable=True)
    repaired = Column(Boolean, nullable=False, default=False)
    details = Column(JSON, nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    run = relationship("ReconciliationRun", back_populates="discrepancies")
