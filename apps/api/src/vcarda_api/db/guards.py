"""Translate driver failures into the service error taxonomy."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import StoreUnavailable
from vcarda_api.observability.loyalty import get_loyalty_store


@asynccontextmanager
async def store_guard(session: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Roll back and raise :class:`StoreUnavailable` when the database is unreachable.

    Integrity violations pass through untouched; callers resolve them by re-reading.
    """

    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, PoolTimeoutError) as exc:
        logger.warning(
            "Store unavailable",
            operation=operation,
            error_type=type(exc).__name__,
        )
        try:
            await session.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after store failure did not complete", operation=operation)
        get_loyalty_store().record_store_unavailable(operation)
        raise StoreUnavailable() from exc


__all__ = ["store_guard"]
