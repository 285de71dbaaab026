"""
web_push.py — Push notification channel for the responder app.

Delivery mechanism:
    • HTTP POST of a JSON message to the push gateway (FCM-style), keyed by
      the device push token registered in the responder directory
    • Payload: title, body, and a data block the app uses to open the SOS

Critical and high priority notifications are sent with
``requireInteraction`` so the app keeps them on screen until tapped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import ChannelDeliveryFailure
from backend.app.notifications.models import (
    ChannelAttempt,
    ChannelName,
    DeliveryOutcome,
    Notification,
)
from backend.app.sos.models import Priority
from backend.app.sos.responders import ResponderContact

logger = logging.getLogger(__name__)


def build_push_message(notification: Notification, token: str) -> Dict[str, Any]:
    urgent = notification.priority >= Priority.HIGH
    return {
        "to": token,
        "notification": {
            "title": notification.title,
            "body": notification.message,
            "tag": notification.sos_id,
            "requireInteraction": urgent,
            "vibrate": [200, 100, 200] if urgent else [100],
        },
        "data": {
            "sos_id": notification.sos_id,
            "type": notification.type.value,
            "priority": notification.priority.label,
            "url": f"/sos/{notification.sos_id}",
        },
    }


def send(
    notification: Notification,
    contact: ResponderContact,
    *,
    provider: str = "simulation",
    gateway_url: Optional[str] = None,
    server_key: Optional[str] = None,
    timeout_seconds: float = 5.0,
) -> ChannelAttempt:
    """
    Send a push notification to a responder's device.

    Raises ChannelDeliveryFailure when the push gateway rejects the message
    or cannot be reached.
    """
    attempt = ChannelAttempt(channel=ChannelName.PUSH, responder_id=contact.responder_id)

    if not contact.push_token:
        attempt.outcome = DeliveryOutcome.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No push token registered"
        return attempt

    message = build_push_message(notification, contact.push_token)

    if provider == "simulation":
        logger.info(
            "[PUSH] %s → %s (%s): %s",
            notification.sos_id,
            contact.responder_id,
            contact.name,
            notification.title,
            extra={"channel": "push", "responder_id": contact.responder_id},
        )
        attempt.provider_response = {
            "mode": "simulated",
            "push_payload_size": len(str(message)),
            "token_prefix": contact.push_token[:12] + "...",
        }

    elif provider == "http":
        if not gateway_url:
            raise ChannelDeliveryFailure("push", "PUSH_GATEWAY_URL is not configured")
        headers = {"Authorization": f"key={server_key}"} if server_key else {}
        try:
            response = httpx.post(
                gateway_url, json=message, headers=headers, timeout=timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ChannelDeliveryFailure(
                "push", f"push gateway returned HTTP {status}", retryable=status >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryFailure("push", str(exc), retryable=True) from exc
        attempt.provider_response = {"mode": "http", "status_code": response.status_code}

    else:
        raise ChannelDeliveryFailure("push", f"Unknown push provider: {provider}")

    attempt.outcome = DeliveryOutcome.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
