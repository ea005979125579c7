"""Authorization rules for the authenticated principal."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import PermissionDenied, SubjectNotFound
from vcarda_api.db.guards import store_guard
from vcarda_api.models.business import Business, BusinessStaffMember
from vcarda_api.models.user import UserRoleEnum


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: UUID
    role: str = UserRoleEnum.CUSTOMER.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value


class AccessPolicy:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    def ensure_admin(self, principal: Principal) -> None:
        if not principal.is_admin:
            raise PermissionDenied()

    def ensure_self_or_admin(self, principal: Principal, customer_id: UUID) -> None:
        if principal.is_admin or principal.user_id == customer_id:
            return
        raise PermissionDenied()

    async def ensure_business_operator(self, principal: Principal, business_id: UUID) -> None:
        """Allow admins, the business owner, and its active staff members."""

        if principal.is_admin:
            return
        async with store_guard(self._db, "access.business_operator"):
            business = (
                await self._db.execute(select(Business.owner_id).where(Business.id == business_id))
            ).one_or_none()
            is_staff = False
            if business is not None and business.owner_id != principal.user_id:
                is_staff = (
                    await self._db.scalar(
                        select(BusinessStaffMember.id).where(
                            BusinessStaffMember.business_id == business_id,
                            BusinessStaffMember.user_id == principal.user_id,
                            BusinessStaffMember.is_active.is_(True),
                        )
                    )
                    is not None
                )
            await self._db.commit()

        if business is None:
            raise SubjectNotFound("Business not found.")
        if business.owner_id == principal.user_id or is_staff:
            return
        raise PermissionDenied()


__all__ = ["AccessPolicy", "Principal"]
