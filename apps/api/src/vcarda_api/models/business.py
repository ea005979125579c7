"""Businesses, their staff, and the loyalty programs they run."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
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

from vcarda_api.core.settings import settings
from vcarda_api.db.base import Base


class Business(Base):
    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    programs = relationship("LoyaltyProgram", back_populates="business")
    staff_members = relationship(
        "BusinessStaffMember", back_populates="business", cascade="all, delete-orphan"
    )


class BusinessStaffMember(Base):
    """Grants a user permission to scan and award on behalf of a business."""

    __tablename__ = "business_staff_members"
    __table_args__ = (
        UniqueConstraint("business_id", "user_id", name="uq_business_staff_members_business_user"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    business = relationship("Business", back_populates="staff_members")


class LoyaltyProgram(Base):
    """A points program. Award guards live here so each business can tune them."""

    __tablename__ = "loyalty_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # ORM inserts take the configured defaults; server defaults cover raw SQL inserts
    points_per_scan = Column(Integer, nullable=False, default=lambda: settings.default_points_per_scan, server_default="10")
    max_points_per_award = Column(
        Integer, nullable=False, default=lambda: settings.default_max_points_per_award, server_default="10000"
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    business = relationship("Business", back_populates="programs")
