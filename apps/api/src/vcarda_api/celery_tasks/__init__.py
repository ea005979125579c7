"""Celery task modules for Vcarda."""

# Import submodules so Celery autodiscovery registers tasks.
from . import reconciliation as _reconciliation  # noqa: F401

__all__ = ["_reconciliation"]
