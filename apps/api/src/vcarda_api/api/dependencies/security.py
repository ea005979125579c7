import hmac

from fastapi import Header, HTTPException, status
from loguru import logger

from vcarda_api.core.settings import settings


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard operator endpoints (loyalty metrics) behind the shared internal key.

    An empty ``internal_api_key`` leaves the endpoints open, which is how local
    development and the test suite run.
    """

    expected = settings.internal_api_key
    if not expected:
        return

    if not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected operator request with invalid API key", key_present=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
