from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from vcarda_api.db.base import Base


class UserRoleEnum(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class UserStatusEnum(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class User(Base):
    """Platform account. Customers are soft-deleted and keep their cards."""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=True, unique=True, index=True)
    display_name = Column(String, nullable=True)
    phone_number = Column(String(32), nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CUSTOMER.value, server_default=UserRoleEnum.CUSTOMER.value)
    status = Column(String(length=16), nullable=False, default=UserStatusEnum.ACTIVE.value, server_default=UserStatusEnum.ACTIVE.value)
    is_provisional = Column(Boolean, nullable=False, default=False, server_default="false")
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_deleted(self) -> bool:
        return self.status == UserStatusEnum.DELETED.value or self.deleted_at is not None
