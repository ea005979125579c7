"""Outbound email transports for balance notifications."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Protocol

from vcarda_api.core.settings import Settings


class EmailBackend(Protocol):
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        ...


def compose_message(
    recipient: str,
    subject: str,
    body_text: str,
    *,
    body_html: str | None = None,
    sender: str | None = None,
) -> EmailMessage:
    """Build a plain-text message with an optional HTML alternative part."""

    message = EmailMessage()
    message["To"] = recipient
    message["Subject"] = subject
    if sender:
        message["From"] = sender
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    sender: str
    username: str | None = None
    password: str | None = None
    starttls: bool = True
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, config: Settings) -> Optional["SMTPConfig"]:
        """Return ``None`` when SMTP is not configured, leaving delivery in-app only."""

        if not config.smtp_host or not config.smtp_sender_email:
            return None
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            sender=config.smtp_sender_email,
            username=config.smtp_username,
            password=config.smtp_password,
            starttls=config.smtp_use_tls,
        )


class SMTPEmailBackend:
    """Deliver through an SMTP relay; smtplib blocks, so each send runs in a thread."""

    def __init__(self, config: SMTPConfig) -> None:
        self._config = config

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        message = compose_message(
            recipient, subject, body_text, body_html=body_html, sender=self._config.sender
        )
        await asyncio.to_thread(self._deliver, message)

    def _deliver(self, message: EmailMessage) -> None:
        config = self._config
        with smtplib.SMTP(config.host, config.port, timeout=config.timeout_seconds) as client:
            if config.starttls:
                client.starttls()
            if config.username and config.password:
                client.login(config.username, config.password)
            client.send_message(message)


class InMemoryEmailBackend:
    """Collects composed messages instead of sending them; used by tests."""

    def __init__(self) -> None:
        self.sent_messages: list[EmailMessage] = []

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        self.sent_messages.append(compose_message(recipient, subject, body_text, body_html=body_html))
