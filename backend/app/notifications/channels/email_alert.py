"""
email_alert.py — Email delivery channel.

Delivery mechanism:
    • SMTP (STARTTLS + optional login) via smtplib
    • multipart/alternative message: plain text + simple HTML card

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: [PRIORITY] {title}: SOS {sos_id}
    Body:
        ┌─────────────────────────────────────────┐
        │  {title}                                │
        │  Priority: {priority} | {emergency}     │
        ├─────────────────────────────────────────┤
        │  {message}                              │
        │  Citizen report: "{citizen_message}"    │
        │  Location: (lat, lng) address           │
        │  [Open SOS]                             │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from html import escape
from typing import Optional

from backend.app.core.errors import ChannelDeliveryFailure
from backend.app.notifications.models import (
    ChannelAttempt,
    ChannelName,
    DeliveryOutcome,
    Notification,
)
from backend.app.sos.responders import ResponderContact

logger = logging.getLogger(__name__)

_PRIORITY_COLOURS = {
    1: "#4CAF50",   # low
    2: "#FF9800",   # medium
    3: "#F44336",   # high
    4: "#B71C1C",   # critical
}


def build_subject(notification: Notification) -> str:
    return f"[{notification.priority.name}] {notification.title}: SOS {notification.sos_id}"


def _location_line(notification: Notification) -> str:
    loc = notification.payload.get("location") or {}
    if "lat" not in loc:
        return "unknown"
    line = f"({loc['lat']:.4f}, {loc['lng']:.4f})"
    if loc.get("address"):
        line += f" {loc['address']}"
    return line


def build_plain_body(notification: Notification) -> str:
    emergency = notification.payload.get("emergency_type", "other")
    citizen = notification.payload.get("citizen_message", "")
    return (
        f"{notification.title}\n"
        f"Priority: {notification.priority.label} | Emergency: {emergency}\n\n"
        f"{notification.message}\n\n"
        f"Citizen report: {citizen}\n"
        f"Location: {_location_line(notification)}\n"
        f"Reference: {notification.sos_id}\n"
    )


def build_html_body(notification: Notification) -> str:
    colour = _PRIORITY_COLOURS.get(int(notification.priority), "#FF9800")
    emergency = escape(str(notification.payload.get("emergency_type", "other")))
    citizen = escape(str(notification.payload.get("citizen_message", "")))
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">{escape(notification.title)}</h2>
        <p style="margin:4px 0 0;">Priority: {notification.priority.name} | {emergency}</p>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <p>{escape(notification.message)}</p>
        <p><strong>Citizen report:</strong> "{citizen}"</p>
        <p><strong>Location:</strong> {escape(_location_line(notification))}</p>
        <a href="/sos/{notification.sos_id}"
           style="background:{colour};color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
          Open SOS
        </a>
      </div>
    </div>
    """


def build_message(notification: Notification, to_address: str, from_address: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = build_subject(notification)
    msg["From"] = from_address
    msg["To"] = to_address
    msg.set_content(build_plain_body(notification))
    msg.add_alternative(build_html_body(notification), subtype="html")
    return msg


def send(
    notification: Notification,
    contact: ResponderContact,
    *,
    provider: str = "simulation",
    smtp_host: Optional[str] = None,
    smtp_port: int = 587,
    smtp_user: Optional[str] = None,
    smtp_password: Optional[str] = None,
    from_address: str = "sos-alerts@disaster-response.local",
    timeout_seconds: float = 5.0,
) -> ChannelAttempt:
    """
    Send an email notification to a responder.

    Parameters
    ----------
    notification : Notification
    contact : ResponderContact
        Must have .email set.
    provider : str
        "simulation" or "smtp".
    smtp_host, smtp_port, smtp_user, smtp_password
        SMTP server config (provider="smtp").
    from_address : str
        Sender address.
    timeout_seconds : float
        Socket timeout for the SMTP session.

    Raises
    ------
    ChannelDeliveryFailure
        SMTP session failed or the server refused the message.
    """
    attempt = ChannelAttempt(channel=ChannelName.EMAIL, responder_id=contact.responder_id)

    if not contact.email:
        attempt.outcome = DeliveryOutcome.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No email address on file"
        return attempt

    msg = build_message(notification, contact.email, from_address)

    if provider == "simulation":
        logger.info(
            "[EMAIL] %s → %s (%s): Subject='%s'",
            notification.sos_id,
            contact.email,
            contact.name,
            msg["Subject"],
            extra={"channel": "email", "responder_id": contact.responder_id},
        )
        attempt.provider_response = {
            "mode": "simulated",
            "subject": msg["Subject"],
            "to": contact.email,
        }

    elif provider == "smtp":
        if not smtp_host:
            raise ChannelDeliveryFailure("email", "SMTP_HOST is not configured")
        try:
            with smtplib.SMTP(smtp_host, smtp_port, timeout=timeout_seconds) as server:
                server.starttls()
                if smtp_user:
                    server.login(smtp_user, smtp_password or "")
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryFailure("email", str(exc), retryable=True) from exc
        if refused:
            raise ChannelDeliveryFailure("email", f"recipient refused: {refused}")
        attempt.provider_response = {"mode": "smtp", "to": contact.email}

    else:
        raise ChannelDeliveryFailure("email", f"Unknown email provider: {provider}")

    attempt.outcome = DeliveryOutcome.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
