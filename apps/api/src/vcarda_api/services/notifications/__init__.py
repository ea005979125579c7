"""Notification service package."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPConfig, SMTPEmailBackend
from .service import Notifier, build_default_email_backend

__all__ = [
    "EmailBackend",
    "InMemoryEmailBackend",
    "Notifier",
    "SMTPConfig",
    "SMTPEmailBackend",
    "build_default_email_backend",
]
