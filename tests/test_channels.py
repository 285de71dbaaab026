"""
test_channels.py — Channel backends (email, SMS, push) in simulation and
provider modes. Provider I/O is patched out.

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from backend.app.core.errors import ChannelDeliveryFailure
from backend.app.notifications.channels import email_alert, sms_gateway, web_push
from backend.app.notifications.models import (
    ChannelName,
    DeliveryOutcome,
    Notification,
    NotificationType,
)
from backend.app.sos.models import Priority
from backend.app.sos.responders import ResponderContact


def _make_notification(message: str = "You have been assigned to a critical priority fire emergency.",
                       priority: Priority = Priority.CRITICAL) -> Notification:
    return Notification(
        type=NotificationType.ASSIGNMENT,
        title="New SOS assignment",
        message=message,
        priority=priority,
        sos_id="SOS-ABC123",
        payload={
            "location": {"lat": 6.927, "lng": 79.861, "address": "Fort <Main St>"},
            "emergency_type": "fire",
            "citizen_message": "Smoke <everywhere>",
        },
    )


def _make_contact(**overrides) -> ResponderContact:
    fields = dict(
        responder_id="R-1",
        name="Nimal",
        email="nimal@example.org",
        phone="+94770000001",
        push_token="tok-r1-abcdefghijkl",
    )
    fields.update(overrides)
    return ResponderContact(**fields)


def _response(status_code: int) -> httpx.Response:
    return httpx.Response(status_code, request=httpx.Request("POST", "https://gw.example/send"))


# ═══════════════════════════════════════════════════════════════════════════
# SMS
# ═══════════════════════════════════════════════════════════════════════════

class TestSmsGateway:

    def test_format_within_limit(self):
        sms = sms_gateway.format_sms(_make_notification(message="x" * 400))
        assert len(sms) == sms_gateway.SMS_MAX_GSM7
        assert sms.startswith("[CRITICAL] ")
        assert sms.endswith(" Ref:SOS-ABC123")
        assert "..." in sms

    def test_short_message_untouched(self):
        sms = sms_gateway.format_sms(_make_notification(message="Go now."))
        assert sms == "[CRITICAL] Go now. Ref:SOS-ABC123"

    def test_simulation_delivers(self):
        attempt = sms_gateway.send(_make_notification(), _make_contact())
        assert attempt.channel == ChannelName.SMS
        assert attempt.outcome == DeliveryOutcome.DELIVERED

    def test_no_phone_skipped(self):
        attempt = sms_gateway.send(_make_notification(), _make_contact(phone=None))
        assert attempt.outcome == DeliveryOutcome.SKIPPED

    def test_http_provider_posts(self):
        with patch("httpx.post", return_value=_response(200)) as post:
            attempt = sms_gateway.send(
                _make_notification(), _make_contact(),
                provider="http", gateway_url="https://gw.example/send", api_key="k",
                timeout_seconds=2.0,
            )
        assert attempt.outcome == DeliveryOutcome.DELIVERED
        kwargs = post.call_args.kwargs
        assert kwargs["json"]["to"] == "+94770000001"
        assert kwargs["headers"] == {"Authorization": "Bearer k"}
        assert kwargs["timeout"] == 2.0

    def test_http_5xx_is_retryable_failure(self):
        with patch("httpx.post", return_value=_response(503)):
            with pytest.raises(ChannelDeliveryFailure) as exc:
                sms_gateway.send(
                    _make_notification(), _make_contact(),
                    provider="http", gateway_url="https://gw.example/send",
                )
        assert exc.value.retryable is True
        assert "503" in exc.value.reason

    def test_http_4xx_not_retryable(self):
        with patch("httpx.post", return_value=_response(400)):
            with pytest.raises(ChannelDeliveryFailure) as exc:
                sms_gateway.send(
                    _make_notification(), _make_contact(),
                    provider="http", gateway_url="https://gw.example/send",
                )
        assert exc.value.retryable is False

    def test_connection_error(self):
        with patch("httpx.post", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(ChannelDeliveryFailure):
                sms_gateway.send(
                    _make_notification(), _make_contact(),
                    provider="http", gateway_url="https://gw.example/send",
                )

    def test_missing_gateway_url(self):
        with pytest.raises(ChannelDeliveryFailure):
            sms_gateway.send(_make_notification(), _make_contact(), provider="http")

    def test_unknown_provider(self):
        with pytest.raises(ChannelDeliveryFailure):
            sms_gateway.send(_make_notification(), _make_contact(), provider="pigeon")


# ═══════════════════════════════════════════════════════════════════════════
# Push
# ═══════════════════════════════════════════════════════════════════════════

class TestWebPush:

    def test_urgent_message_requires_interaction(self):
        msg = web_push.build_push_message(_make_notification(), "tok")
        assert msg["notification"]["requireInteraction"] is True
        assert msg["data"]["url"] == "/sos/SOS-ABC123"

    def test_low_priority_message(self):
        msg = web_push.build_push_message(_make_notification(priority=Priority.LOW), "tok")
        assert msg["notification"]["requireInteraction"] is False

    def test_no_token_skipped(self):
        attempt = web_push.send(_make_notification(), _make_contact(push_token=None))
        assert attempt.outcome == DeliveryOutcome.SKIPPED

    def test_simulation_delivers(self):
        attempt = web_push.send(_make_notification(), _make_contact())
        assert attempt.outcome == DeliveryOutcome.DELIVERED
        assert attempt.provider_response["token_prefix"] == "tok-r1-abcde..."

    def test_http_failure(self):
        with patch("httpx.post", return_value=_response(500)):
            with pytest.raises(ChannelDeliveryFailure) as exc:
                web_push.send(
                    _make_notification(), _make_contact(),
                    provider="http", gateway_url="https://push.example/send",
                )
        assert exc.value.channel == "push"


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailAlert:

    def test_subject(self):
        subject = email_alert.build_subject(_make_notification())
        assert subject == "[CRITICAL] New SOS assignment: SOS SOS-ABC123"

    def test_html_is_escaped(self):
        html = email_alert.build_html_body(_make_notification())
        assert "Smoke &lt;everywhere&gt;" in html
        assert "<everywhere>" not in html

    def test_message_has_plain_and_html_parts(self):
        msg = email_alert.build_message(_make_notification(), "to@example.org", "from@example.org")
        types = [part.get_content_type() for part in msg.iter_parts()]
        assert types == ["text/plain", "text/html"]
        assert "Fort <Main St>" in msg.get_body(("plain",)).get_content()

    def test_no_email_skipped(self):
        attempt = email_alert.send(_make_notification(), _make_contact(email=None))
        assert attempt.outcome == DeliveryOutcome.SKIPPED

    def test_simulation_delivers(self):
        attempt = email_alert.send(_make_notification(), _make_contact())
        assert attempt.outcome == DeliveryOutcome.DELIVERED
        assert attempt.provider_response["to"] == "nimal@example.org"

    def test_smtp_provider(self):
        server = MagicMock()
        server.send_message.return_value = {}
        smtp = MagicMock()
        smtp.return_value.__enter__.return_value = server
        with patch.object(smtplib, "SMTP", smtp):
            attempt = email_alert.send(
                _make_notification(), _make_contact(),
                provider="smtp", smtp_host="mail.example", smtp_user="u", smtp_password="p",
                timeout_seconds=3.0,
            )
        assert attempt.outcome == DeliveryOutcome.DELIVERED
        smtp.assert_called_once_with("mail.example", 587, timeout=3.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")

    def test_smtp_error_becomes_channel_failure(self):
        smtp = MagicMock(side_effect=smtplib.SMTPConnectError(421, "busy"))
        with patch.object(smtplib, "SMTP", smtp):
            with pytest.raises(ChannelDeliveryFailure) as exc:
                email_alert.send(
                    _make_notification(), _make_contact(),
                    provider="smtp", smtp_host="mail.example",
                )
        assert exc.value.retryable is True

    def test_refused_recipient(self):
        server = MagicMock()
        server.send_message.return_value = {"nimal@example.org": (550, b"no such user")}
        smtp = MagicMock()
        smtp.return_value.__enter__.return_value = server
        with patch.object(smtplib, "SMTP", smtp):
            with pytest.raises(ChannelDeliveryFailure):
                email_alert.send(
                    _make_notification(), _make_contact(),
                    provider="smtp", smtp_host="mail.example",
                )

    def test_smtp_without_host(self):
        with pytest.raises(ChannelDeliveryFailure):
            email_alert.send(_make_notification(), _make_contact(), provider="smtp")
