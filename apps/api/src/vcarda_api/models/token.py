"""Signed single-use token records, their archive, and the scan audit log."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from vcarda_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenSubjectKind(str, Enum):
    CUSTOMER = "customer"
    PROMO_CODE = "promo_code"
    PROGRAM_CARD = "program_card"


class TokenStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    REVOKED = "revoked"


class TokenArchiveStatus(str, Enum):
    CONSUMED = "consumed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class QrToken(Base):
    __tablename__ = "qr_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subject_kind = Column(String(24), nullable=False)
    subject_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), nullable=True)
    nonce = Column(String(64), nullable=False)
    key_id = Column(String(64), nullable=False)
    version = Column(String(8), nullable=False)
    tag = Column(String(128), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=TokenStatus.ACTIVE.value, server_default=TokenStatus.ACTIVE.value, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    consumer_key = Column(String(128), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class QrTokenArchive(Base):
    """Retired tokens kept for audit after the live row is removed."""

    __tablename__ = "qr_token_archive"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_id = Column(UUID(as_uuid=True), nullable=False, unique=True)
    subject_kind = Column(String(24), nullable=False)
    subject_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), nullable=True)
    final_status = Column(String(16), nullable=False)
    nonce = Column(String(64), nullable=False)
    key_id = Column(String(64), nullable=False)
    version = Column(String(8), nullable=False)
    tag = Column(String(128), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    retired_at = Column(DateTime(timezone=True), nullable=True)
    consumer_key = Column(String(128), nullable=True)
    revoke_reason = Column(String(64), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class QrScanLog(Base):
    __tablename__ = "qr_scan_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    business_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    scanned_by = Column(UUID(as_uuid=True), nullable=True)
    customer_id = Column(UUID(as_uuid=True), nullable=True)
    program_id = Column(UUID(as_uuid=True), nullable=True)
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    success = Column(Boolean, nullable=False, default=False, server_default="false")
    failure_reason = Column(String(48), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
