"""Background workers supporting async processing."""

from .reconciler import ReconcilerWorker

__all__ = ["ReconcilerWorker"]
