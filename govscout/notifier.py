"""Best-effort notification channels.

Channels raise on failure; :class:`Notifier` is the only caller and turns
every outcome into a :class:`DeliveryResult`, so delivery problems are visible
at the call site but never propagate.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Protocol

import httpx

from govscout.config import NotificationSettings

log = logging.getLogger(__name__)

THEME_INFO = "0076D7"
THEME_SUCCESS = "28a745"


@dataclass(frozen=True)
class DeliveryResult:
    channel: str
    delivered: bool
    skipped: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return not self.delivered and not self.skipped


class ChatChannel(Protocol):
    enabled: bool

    def send(self, title: str, text: str, link: str | None = None) -> None: ...


class EmailChannel(Protocol):
    enabled: bool

    def send(self, to: str, subject: str, body: str) -> None: ...


# ---------------------------------------------------------------------------
# Microsoft Teams incoming webhook
# ---------------------------------------------------------------------------


def build_message_card(title: str, text: str, theme_color: str = THEME_INFO, link: str | None = None) -> dict[str, Any]:
    card: dict[str, Any] = {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "title": title,
        "text": text,
        "themeColor": theme_color,
    }
    if link:
        card["potentialAction"] = [{
            "@type": "OpenUri",
            "name": "View Details",
            "targets": [{"os": "default", "uri": link}],
        }]
    return card


class TeamsWebhookChannel:
    def __init__(self, webhook_url: str, enabled: bool = True, timeout: float = 10.0,
                 client: httpx.Client | None = None):
        self.webhook_url = webhook_url
        self.enabled = enabled and bool(webhook_url)
        self.timeout = timeout
        self._client = client
        if enabled and not webhook_url:
            log.warning("Teams webhook enabled but URL not configured. Notifications will be skipped.")

    def send(self, title: str, text: str, link: str | None = None) -> None:
        card = build_message_card(title, text, THEME_SUCCESS if link else THEME_INFO, link)
        if self._client is not None:
            response = self._client.post(self.webhook_url, json=card, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=card)
        response.raise_for_status()


# ---------------------------------------------------------------------------
# SMTP email
# ---------------------------------------------------------------------------


class SmtpEmailChannel:
    def __init__(self, settings: NotificationSettings,
                 smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP):
        self.settings = settings
        self.enabled = settings.email_enabled and bool(settings.smtp_host)
        self._smtp_factory = smtp_factory
        if settings.email_enabled and not settings.smtp_host:
            log.warning("Email enabled but SMTP_HOST not configured. Emails will be skipped.")

    def send(self, to: str, subject: str, body: str) -> None:
        s = self.settings
        msg = EmailMessage()
        msg["From"] = s.email_from
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        with self._smtp_factory(s.smtp_host, s.smtp_port, timeout=s.timeout_seconds) as smtp:
            if s.smtp_starttls:
                smtp.starttls()
            if s.smtp_user:
                smtp.login(s.smtp_user, s.smtp_password)
            smtp.send_message(msg)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class Notifier:
    def __init__(self, chat: ChatChannel | None = None, email: EmailChannel | None = None):
        self.chat = chat
        self.email = email

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> Notifier:
        return cls(
            chat=TeamsWebhookChannel(
                settings.teams_webhook_url, settings.teams_enabled, settings.timeout_seconds,
            ),
            email=SmtpEmailChannel(settings),
        )

    def send_chat(self, title: str, body: str, link: str | None = None) -> DeliveryResult:
        if self.chat is None or not self.chat.enabled:
            log.debug("Chat notifications disabled or not configured, skipping: %s", title)
            return DeliveryResult("chat", delivered=False, skipped=True)
        try:
            self.chat.send(title, body, link)
        except Exception as exc:
            log.error("Failed to send chat message %r: %s", title, exc)
            return DeliveryResult("chat", delivered=False, error=str(exc) or type(exc).__name__)
        log.debug("Chat message sent: %s", title)
        return DeliveryResult("chat", delivered=True)

    def send_email(self, to: str, subject: str, body: str) -> DeliveryResult:
        if self.email is None or not self.email.enabled:
            log.debug("Email sending disabled, skipping email to %s", to)
            return DeliveryResult("email", delivered=False, skipped=True)
        try:
            self.email.send(to, subject, body)
        except Exception as exc:
            log.error("Failed to send email to %s (%s): %s", to, subject, exc)
            return DeliveryResult("email", delivered=False, error=str(exc) or type(exc).__name__)
        log.info("Sent email to %s: %s", to, subject)
        return DeliveryResult("email", delivered=True)
