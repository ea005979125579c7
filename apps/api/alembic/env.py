"""Alembic environment for the loyalty schema.

Migrations run through a synchronous driver derived from the application's
async ``database_url`` (asyncpg or aiosqlite).
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from vcarda_api.core.settings import settings
from vcarda_api.db.base import Base

_ASYNC_DRIVERS = {"postgresql+asyncpg": "postgresql", "sqlite+aiosqlite": "sqlite"}

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def sync_url(database_url: str) -> str:
    scheme, sep, rest = database_url.partition("://")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def _configure(**kwargs) -> None:
    url = sync_url(settings.database_url)
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        # SQLite cannot ALTER constraints in place.
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations() -> None:
    url = sync_url(settings.database_url)
    if context.is_offline_mode():
        _configure(url=url, literal_binds=True)
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = create_engine(url, poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


run_migrations()
