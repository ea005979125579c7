"""Principal resolution from headers forwarded by the upstream auth layer."""

from __future__ import annotations

from uuid import UUID

from fastapi import Header, HTTPException, status

from vcarda_api.models.user import UserRoleEnum
from vcarda_api.services.access import Principal


async def require_principal(
    session_user: str | None = Header(None, alias="X-Session-User"),
    session_role: str | None = Header(None, alias="X-Session-Role"),
) -> Principal:
    """Resolve the authenticated caller; the role defaults to ``customer``."""

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        user_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    role = (session_role or UserRoleEnum.CUSTOMER.value).strip().lower()
    try:
        UserRoleEnum(role)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session role",
        ) from error

    return Principal(user_id=user_id, role=role)
