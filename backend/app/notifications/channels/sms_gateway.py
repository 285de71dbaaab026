"""
sms_gateway.py — SMS delivery channel via an HTTP gateway.

Delivery mechanism:
    • HTTP POST to the configured SMS gateway (JSON body, bearer API key)
    • Payload: ≤160 chars (GSM 7-bit), truncated with "..."

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    "[{PRIORITY}] {message} Ref:{sos_id}"

    Example:
        "[CRITICAL] You have been assigned to a critical priority medical
         emergency. Ref:SOS-3A7B9C21D0E4"

Providers:
    simulation — log only (default for development)
    http       — POST {to, message, reference} to SMS_GATEWAY_URL
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from backend.app.core.errors import ChannelDeliveryFailure
from backend.app.notifications.models import (
    ChannelAttempt,
    ChannelName,
    DeliveryOutcome,
    Notification,
)
from backend.app.sos.responders import ResponderContact

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_sms(notification: Notification) -> str:
    """Format the SMS body within the 160-char GSM limit."""
    prefix = f"[{notification.priority.name}] "
    suffix = f" Ref:{notification.sos_id}"
    body = notification.message

    available = SMS_MAX_GSM7 - len(prefix) - len(suffix)
    if len(body) > available:
        body = body[: available - 3] + "..."

    return f"{prefix}{body}{suffix}"


def send(
    notification: Notification,
    contact: ResponderContact,
    *,
    provider: str = "simulation",
    gateway_url: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout_seconds: float = 5.0,
) -> ChannelAttempt:
    """
    Send an SMS notification to a responder.

    Parameters
    ----------
    notification : Notification
    contact : ResponderContact
        Must have .phone set (E.164 format).
    provider : str
        "simulation" or "http".
    gateway_url, api_key : str | None
        Gateway endpoint and key (provider="http").
    timeout_seconds : float
        HTTP timeout for the gateway call.

    Raises
    ------
    ChannelDeliveryFailure
        Gateway unreachable or rejected the message.
    """
    attempt = ChannelAttempt(channel=ChannelName.SMS, responder_id=contact.responder_id)

    if not contact.phone:
        attempt.outcome = DeliveryOutcome.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No phone number on file"
        return attempt

    sms_body = format_sms(notification)

    if provider == "simulation":
        logger.info(
            "[SMS] %s → %s (%s): %d chars → '%s'",
            notification.sos_id,
            contact.phone,
            contact.name,
            len(sms_body),
            sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
            extra={"channel": "sms", "responder_id": contact.responder_id},
        )
        attempt.provider_response = {
            "mode": "simulated",
            "message_length": len(sms_body),
            "phone": contact.phone,
        }

    elif provider == "http":
        if not gateway_url:
            raise ChannelDeliveryFailure("sms", "SMS_GATEWAY_URL is not configured")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        try:
            response = httpx.post(
                gateway_url,
                json={
                    "to": contact.phone,
                    "message": sms_body,
                    "reference": notification.sos_id,
                },
                headers=headers,
                timeout=timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ChannelDeliveryFailure(
                "sms", f"gateway returned HTTP {status}", retryable=status >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryFailure("sms", str(exc), retryable=True) from exc
        attempt.provider_response = {
            "mode": "http",
            "status_code": response.status_code,
            "phone": contact.phone,
        }

    else:
        raise ChannelDeliveryFailure("sms", f"Unknown SMS provider: {provider}")

    attempt.outcome = DeliveryOutcome.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
