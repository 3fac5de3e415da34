from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from settlement.core.config import Settings, get_settings
from settlement.core.errors import NotificationError

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    to: str
    subject: str
    html: str
    bcc: str | None = None


class Notifier(Protocol):
    backend: str

    def send(self, to: str, subject: str, html: str, bcc: str | None = None) -> None:
        ...


class LogNotifier:
    """Writes messages to the log and keeps them in memory."""

    backend = "log"

    def __init__(self):
        self.sent: list[SentMessage] = []

    def send(self, to: str, subject: str, html: str, bcc: str | None = None) -> None:
        self.sent.append(SentMessage(to=to, subject=subject, html=html, bcc=bcc))
        logger.info("mail to=%s subject=%s", to, subject)

    def to(self, address: str) -> list[SentMessage]:
        return [message for message in self.sent if message.to == address]


class ResendNotifier:
    backend = "resend"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        if not self.settings.resend_api_key:
            raise NotificationError("SETTLE_RESEND_API_KEY is not configured")
        self.base_url = self.settings.resend_base_url.rstrip("/")
        self.transport = transport

    def send(self, to: str, subject: str, html: str, bcc: str | None = None) -> None:
        payload = {"from": self.settings.mail_from, "to": [to], "subject": subject, "html": html}
        if bcc:
            payload["bcc"] = [bcc]
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"send to {to} failed: {exc}") from exc
