from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Unnamed indexes resolve to the ``ix_<table>_<column>`` names the migrations create.
LOYALTY_NAMING_CONVENTION = {"ix": "ix_%(column_0_label)s"}


class Base(DeclarativeBase):
    """Declarative base for the loyalty schema; every model names its own table."""

    metadata = MetaData(naming_convention=LOYALTY_NAMING_CONVENTION)


# Alembic autogenerate only sees tables whose models have been imported.
import vcarda_api.models  # noqa: E402,F401
