"""Best-effort delivery of ledger events (tier changes, expiry, referral rewards)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from loguru import logger

from points_ledger.core.settings import get_settings

from .backend import EmailBackend, SMTPEmailBackend


class LedgerEventKind(str, Enum):
    TIER_CHANGED = "tier_changed"
    POINTS_EXPIRED = "points_expired"
    POINTS_EXPIRING = "points_expiring"
    REFERRAL_REWARDED = "referral_rewarded"


@dataclass(slots=True)
class LedgerEvent:
    kind: LedgerEventKind
    user_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Contact:
    email: str
    display_name: str | None = None


class UserDirectory(Protocol):
    """Identity collaborator resolving a user id to a reachable contact."""

    async def resolve_contact(self, user_id: UUID) -> Contact | None:
        ...


class InMemoryUserDirectory:
    def __init__(self, contacts: dict[UUID, Contact] | None = None) -> None:
        self._contacts = dict(contacts or {})

    def add(self, user_id: UUID, email: str, display_name: str | None = None) -> None:
        self._contacts[user_id] = Contact(email=email, display_name=display_name)

    async def resolve_contact(self, user_id: UUID) -> Contact | None:
        return self._contacts.get(user_id)


@dataclass
class NotificationEvent:
    """A notification that was handed to the backend."""

    recipient: str
    subject: str
    body_text: str
    event_type: str
    metadata: dict[str, Any]


def render_event(event: LedgerEvent, contact: Contact) -> tuple[str, str]:
    """Return ``(subject, body)`` for an event."""

    payload = event.payload
    greeting = f"Hi {contact.display_name}," if contact.display_name else "Hi there,"
    kind = event.kind
    if kind is LedgerEventKind.TIER_CHANGED:
        tier_name = payload.get("tier_name")
        if tier_name:
            subject = f"You are now in the {tier_name} tier"
            line = f"Your balance of {payload.get('available_points', 0)} points places you in {tier_name}."
        else:
            subject = "Your loyalty tier has changed"
            line = "Your balance no longer qualifies for a loyalty tier."
    elif kind is LedgerEventKind.POINTS_EXPIRED:
        subject = f"{payload.get('points', 0)} points have expired"
        line = f"{payload.get('points', 0)} points expired on {payload.get('expired_at', 'the scheduled date')}."
    elif kind is LedgerEventKind.POINTS_EXPIRING:
        subject = f"{payload.get('points', 0)} points expire soon"
        line = f"{payload.get('points', 0)} points will expire on {payload.get('expires_at')}. Redeem them before then."
    elif kind is LedgerEventKind.REFERRAL_REWARDED:
        subject = "Your referral earned a reward"
        line = (
            f"You earned {payload.get('points', 0)} pending points from referral slot "
            f"{payload.get('slot_number')}."
        )
    else:
        raise ValueError(f"Unsupported ledger event kind: {kind}")
    return subject, "\n".join([greeting, "", line])


def _default_backend() -> EmailBackend | None:
    settings = get_settings()
    if not settings.smtp_host or not settings.smtp_sender_email:
        return None
    return SMTPEmailBackend(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        sender_email=settings.smtp_sender_email,
    )


class NotificationService:
    """Fire-and-forget publisher; delivery failures are logged, never raised."""

    def __init__(
        self,
        *,
        directory: UserDirectory | None = None,
        backend: EmailBackend | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._directory = directory
        self._backend = backend if backend is not None else _default_backend()
        self._enabled = get_settings().ledger_notifications_enabled if enabled is None else enabled
        self._pending: set[asyncio.Task[NotificationEvent | None]] = set()
        self._events: list[NotificationEvent] = []

    @property
    def can_deliver(self) -> bool:
        """True when events would be handed to a backend rather than dropped."""

        return self._enabled and self._backend is not None and self._directory is not None

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    def publish(self, event: LedgerEvent) -> asyncio.Task[NotificationEvent | None] | None:
        if not self.can_deliver:
            logger.debug("Ledger notification skipped", kind=event.kind.value, user_id=str(event.user_id))
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop for ledger notification", kind=event.kind.value)
            return None
        task = loop.create_task(self._deliver_safely(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def deliver(self, event: LedgerEvent) -> NotificationEvent | None:
        if self._backend is None or self._directory is None:
            return None
        contact = await self._directory.resolve_contact(event.user_id)
        if contact is None or not contact.email:
            logger.info("No contact for ledger notification", kind=event.kind.value, user_id=str(event.user_id))
            return None
        subject, body = render_event(event, contact)
        await self._backend.send_email(contact.email, subject, body)
        sent = NotificationEvent(
            recipient=contact.email,
            subject=subject,
            body_text=body,
            event_type=event.kind.value,
            metadata={"user_id": str(event.user_id), **event.payload},
        )
        self._events.append(sent)
        logger.info("Ledger notification sent", kind=event.kind.value, user_id=str(event.user_id))
        return sent

    async def _deliver_safely(self, event: LedgerEvent) -> NotificationEvent | None:
        try:
            return await self.deliver(event)
        except Exception:
            logger.exception("Ledger notification delivery failed", kind=event.kind.value, user_id=str(event.user_id))
            return None


__all__ = [
    "Contact",
    "InMemoryUserDirectory",
    "LedgerEvent",
    "LedgerEventKind",
    "NotificationEvent",
    "NotificationService",
    "UserDirectory",
    "render_event",
]
