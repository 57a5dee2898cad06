"""Notification service package."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend
from .service import (
    Contact,
    InMemoryUserDirectory,
    LedgerEvent,
    LedgerEventKind,
    NotificationEvent,
    NotificationService,
    UserDirectory,
    render_event,
)

__all__ = [
    "Contact",
    "EmailBackend",
    "InMemoryEmailBackend",
    "InMemoryUserDirectory",
    "LedgerEvent",
    "LedgerEventKind",
    "NotificationEvent",
    "NotificationService",
    "SMTPEmailBackend",
    "UserDirectory",
    "render_event",
]
