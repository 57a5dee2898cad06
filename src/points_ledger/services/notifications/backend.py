"""Email delivery backends for ledger notifications."""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Protocol


class EmailBackend(Protocol):
    async def send_email(self, recipient: str, subject: str, body_text: str) -> None:
        ...


def _build_message(sender: str | None, recipient: str, subject: str, body_text: str) -> EmailMessage:
    message = EmailMessage()
    if sender:
        message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body_text)
    return message


class SMTPEmailBackend:
    """Sends through SMTP on a worker thread so the event loop never blocks."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        use_tls: bool,
        sender_email: str,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender_email = sender_email
        self._timeout = timeout

    async def send_email(self, recipient: str, subject: str, body_text: str) -> None:
        message = _build_message(self._sender_email, recipient, subject, body_text)
        await asyncio.to_thread(self._send, message)

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(message)


class InMemoryEmailBackend:
    """Keeps outbound messages for assertions."""

    def __init__(self) -> None:
        self.sent_messages: list[EmailMessage] = []

    async def send_email(self, recipient: str, subject: str, body_text: str) -> None:
        self.sent_messages.append(_build_message(None, recipient, subject, body_text))


__all__ = ["EmailBackend", "InMemoryEmailBackend", "SMTPEmailBackend"]
