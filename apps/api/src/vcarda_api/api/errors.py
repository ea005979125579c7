"""HTTP mapping for the loyalty error taxonomy.

Register on an application with :func:`register_exception_handlers`.
"""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from vcarda_api.core.errors import (
    InsufficientBalance,
    InvalidRequest,
    LoyaltyCoreError,
    PermissionDenied,
    StoreUnavailable,
    SubjectNotFound,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenInvalid,
    TokenMalformed,
    TokenRevoked,
    TokenSignatureInvalid,
)

RETRY_AFTER_SECONDS = 1

_STATUS_BY_ERROR: dict[type[LoyaltyCoreError], int] = {
    TokenMalformed: status.HTTP_400_BAD_REQUEST,
    TokenSignatureInvalid: status.HTTP_400_BAD_REQUEST,
    TokenExpired: status.HTTP_410_GONE,
    TokenRevoked: status.HTTP_410_GONE,
    TokenAlreadyConsumed: status.HTTP_409_CONFLICT,
    TokenInvalid: status.HTTP_400_BAD_REQUEST,
    SubjectNotFound: status.HTTP_404_NOT_FOUND,
    InsufficientBalance: status.HTTP_409_CONFLICT,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    InvalidRequest: status.HTTP_400_BAD_REQUEST,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: LoyaltyCoreError) -> int:
    for cls in type(exc).__mro__:
        code = _STATUS_BY_ERROR.get(cls)
        if code is not None:
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def loyalty_error_handler(request: Request, exc: LoyaltyCoreError) -> JSONResponse:
    status_code = status_for(exc)
    headers: dict[str, str] | None = None
    if exc.retryable:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}

    if status_code >= 500:
        logger.warning(
            "Loyalty request failed",
            path=request.url.path,
            error=exc.kind,
            status_code=status_code,
        )
    else:
        logger.info("Loyalty request rejected", path=request.url.path, error=exc.kind, status_code=status_code)

    return JSONResponse(status_code=status_code, content=exc.as_dict(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LoyaltyCoreError, loyalty_error_handler)  # type: ignore[arg-type]


__all__ = ["loyalty_error_handler", "register_exception_handlers", "status_for"]
