"""Tests for notification channels and the best-effort fan-out."""
from __future__ import annotations

import json
import smtplib
from unittest.mock import MagicMock

import httpx
import pytest

from govscout.config import NotificationSettings
from govscout.notifier import (
    THEME_INFO,
    THEME_SUCCESS,
    Notifier,
    SmtpEmailChannel,
    TeamsWebhookChannel,
    build_message_card,
)

WEBHOOK = "https://example.webhook.office.com/webhookb2/abc"


class RecordingChat:
    enabled = True

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[tuple] = []

    def send(self, title, text, link=None):
        if self.error:
            raise self.error
        self.sent.append((title, text, link))


class RecordingEmail:
    enabled = True

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[tuple] = []

    def send(self, to, subject, body):
        if self.error:
            raise self.error
        self.sent.append((to, subject, body))


def _smtp_settings(**overrides) -> NotificationSettings:
    values = dict(
        smtp_host="smtp.example.com", smtp_port=587, smtp_user="bot", smtp_password="secret",
        smtp_starttls=True, email_from="govscout@example.com", email_enabled=True,
        teams_webhook_url="", teams_enabled=False,
    )
    values.update(overrides)
    return NotificationSettings(**values)


# ---------------------------------------------------------------------------
# Teams webhook
# ---------------------------------------------------------------------------


class TestMessageCard:
    def test_without_link(self):
        card = build_message_card("Title", "Body")
        assert card["@type"] == "MessageCard"
        assert card["themeColor"] == THEME_INFO
        assert "potentialAction" not in card

    def test_with_link(self):
        card = build_message_card("Title", "Body", THEME_SUCCESS, "https://sam.gov/opp/1")
        [action] = card["potentialAction"]
        assert action["@type"] == "OpenUri"
        assert action["targets"][0]["uri"] == "https://sam.gov/opp/1"


class TestTeamsWebhookChannel:
    def test_posts_card(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="1")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        TeamsWebhookChannel(WEBHOOK, client=client).send("Alert", "**Score**: 90", "https://sam.gov/opp/1")

        [request] = requests
        assert str(request.url) == WEBHOOK
        body = json.loads(request.content)
        assert body["title"] == "Alert"
        assert body["themeColor"] == THEME_SUCCESS

    def test_http_error_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            TeamsWebhookChannel(WEBHOOK, client=client).send("Alert", "text")

    def test_missing_url_disables(self):
        assert TeamsWebhookChannel("", enabled=True).enabled is False


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------


class TestSmtpEmailChannel:
    def test_sends_message(self):
        factory = MagicMock()
        smtp = factory.return_value.__enter__.return_value
        SmtpEmailChannel(_smtp_settings(), smtp_factory=factory).send("ops@example.com", "Subject", "Body")

        factory.assert_called_once_with("smtp.example.com", 587, timeout=10.0)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("bot", "secret")
        msg = smtp.send_message.call_args.args[0]
        assert msg["To"] == "ops@example.com"
        assert msg["From"] == "govscout@example.com"
        assert msg["Subject"] == "Subject"
        assert msg.get_content().strip() == "Body"

    def test_no_auth_no_tls(self):
        factory = MagicMock()
        smtp = factory.return_value.__enter__.return_value
        settings = _smtp_settings(smtp_user="", smtp_starttls=False)
        SmtpEmailChannel(settings, smtp_factory=factory).send("ops@example.com", "S", "B")
        smtp.starttls.assert_not_called()
        smtp.login.assert_not_called()

    def test_missing_host_disables(self):
        assert SmtpEmailChannel(_smtp_settings(smtp_host="")).enabled is False


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestNotifier:
    def test_delivered(self):
        chat, email = RecordingChat(), RecordingEmail()
        notifier = Notifier(chat, email)
        assert notifier.send_chat("T", "B", "https://x").delivered
        assert notifier.send_email("a@example.com", "S", "B").delivered
        assert chat.sent == [("T", "B", "https://x")]
        assert email.sent == [("a@example.com", "S", "B")]

    def test_failures_never_raise(self):
        notifier = Notifier(
            RecordingChat(httpx.ConnectError("refused")),
            RecordingEmail(smtplib.SMTPException("SMTP server unavailable")),
        )
        chat = notifier.send_chat("T", "B")
        email = notifier.send_email("a@example.com", "S", "B")
        assert chat.failed and chat.channel == "chat" and chat.error == "refused"
        assert email.failed and email.error == "SMTP server unavailable"

    def test_disabled_channels_skip(self):
        chat, email = RecordingChat(), RecordingEmail()
        chat.enabled = False
        email.enabled = False
        notifier = Notifier(chat, email)
        result = notifier.send_chat("T", "B")
        assert result.skipped and not result.failed
        assert notifier.send_email("a@example.com", "S", "B").skipped
        assert chat.sent == [] and email.sent == []

    def test_unconfigured(self):
        notifier = Notifier()
        assert notifier.send_chat("T", "B").skipped
        assert notifier.send_email("a@example.com", "S", "B").skipped

    def test_from_settings(self):
        notifier = Notifier.from_settings(_smtp_settings(teams_webhook_url=WEBHOOK, teams_enabled=True))
        assert isinstance(notifier.chat, TeamsWebhookChannel) and notifier.chat.enabled
        assert isinstance(notifier.email, SmtpEmailChannel) and notifier.email.enabled
