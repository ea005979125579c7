"""Async engine and session plumbing."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vcarda_api.core.settings import settings


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # SQLite serialises writers; give concurrent ledger transactions time to queue.
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(settings.database_url, future=True, **_engine_options(settings.database_url))

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session
