"""
models.py — Data structures for responder notification delivery.

Defines:
    • NotificationType   — event kind (assignment / status_update / escalation / withdrawal)
    • ChannelName        — external delivery channels
    • DeliveryOutcome    — per-channel result
    • Notification       — an in-app inbox entry
    • NotificationEvent  — domain event fanned out by the dispatcher
    • ChannelAttempt     — one channel send for one responder
    • TargetDeliveryRecord / DeliveryReport — dispatch results

═══════════════════════════════════════════════════════════════════════════
DELIVERY MODEL
═══════════════════════════════════════════════════════════════════════════

    event ──► for each target responder
                 ├── in-app  : Notification written to the inbox (always)
                 ├── email   : delivered | failed | skipped
                 ├── sms     : delivered | failed | skipped
                 └── push    : delivered | failed | skipped

skipped  = channel disabled, or the responder has no address for it
failed   = provider error, exception, or channel timeout
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.sos.models import Priority, SosSignal


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class NotificationType(str, Enum):
    ASSIGNMENT    = "assignment"
    STATUS_UPDATE = "status_update"
    ESCALATION    = "escalation"
    WITHDRAWAL    = "withdrawal"   # sent to the prior responder on reassignment


class ChannelName(str, Enum):
    """External channels; in-app delivery is implicit and always attempted."""
    EMAIL = "email"
    SMS   = "sms"
    PUSH  = "push"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_notification_id() -> str:
    return f"NTF-{uuid.uuid4().hex[:12].upper()}"


@dataclass
class Notification:
    """
    One entry in a responder's inbox.

    ``sos_id`` is a lookup reference only; the notification belongs to the
    inbox it was stored in.
    """
    type: NotificationType
    title: str
    message: str
    priority: Priority
    sos_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_notification_id)
    created_at: datetime = field(default_factory=_now)
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.label,
            "sos_id": self.sos_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


_TITLES = {
    NotificationType.ASSIGNMENT:    "New SOS assignment",
    NotificationType.STATUS_UPDATE: "SOS status updated",
    NotificationType.ESCALATION:    "SOS escalated",
    NotificationType.WITHDRAWAL:    "SOS assignment withdrawn",
}


@dataclass
class NotificationEvent:
    """
    A triage event to fan out.

    ``signal`` is the post-write snapshot; ``extra`` carries event-specific
    fields (previous status, escalation level, new responder, ...).
    """
    type: NotificationType
    signal: SosSignal
    actor_id: str
    notes: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        s = self.signal
        emergency = s.emergency_type.value.replace("_", " ")
        if self.type == NotificationType.ASSIGNMENT:
            return f"You have been assigned to a {s.priority.label} priority {emergency} emergency."
        if self.type == NotificationType.WITHDRAWAL:
            return f"You are no longer assigned to SOS {s.id}; it was reassigned."
        if self.type == NotificationType.STATUS_UPDATE:
            return f"SOS {s.id} is now {s.status.value}."
        return (
            f"SOS {s.id} ({s.priority.label}, {emergency}) escalated to "
            f"level {s.escalation_level}."
        )

    def build_notification(self) -> Notification:
        s = self.signal
        payload: Dict[str, Any] = {
            "location": s.location.to_dict(),
            "emergency_type": s.emergency_type.value,
            "citizen_message": s.message,
            "actor_id": self.actor_id,
            "notes": self.notes,
            "status": s.status.value,
            "escalation_level": s.escalation_level,
        }
        payload.update(self.extra)
        return Notification(
            type=self.type,
            title=_TITLES[self.type],
            message=self.summary(),
            priority=s.priority,
            sos_id=s.id,
            payload=payload,
        )


@dataclass
class ChannelAttempt:
    """Result of one external channel send to one responder."""
    channel: ChannelName
    responder_id: str
    outcome: DeliveryOutcome = DeliveryOutcome.SKIPPED
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    tries: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "responder_id": self.responder_id,
            "outcome": self.outcome.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "error_message": self.error_message,
            "tries": self.tries,
        }


@dataclass
class TargetDeliveryRecord:
    """Everything that happened for one target responder."""
    responder_id: str
    notification_id: str
    attempts: Dict[ChannelName, ChannelAttempt] = field(default_factory=dict)

    def outcome(self, channel: ChannelName) -> DeliveryOutcome:
        return self.attempts[channel].outcome

    @property
    def channels_delivered(self) -> List[ChannelName]:
        return [c for c, a in self.attempts.items() if a.outcome == DeliveryOutcome.DELIVERED]

    @property
    def channels_failed(self) -> List[ChannelName]:
        return [c for c, a in self.attempts.items() if a.outcome == DeliveryOutcome.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responder_id": self.responder_id,
            "notification_id": self.notification_id,
            "in_app": DeliveryOutcome.DELIVERED.value,
            "channels": {c.value: a.to_dict() for c, a in self.attempts.items()},
        }


@dataclass
class DeliveryReport:
    """Aggregated result of one dispatch call."""
    event_type: NotificationType
    sos_id: str
    records: List[TargetDeliveryRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def channel_summary(self) -> Dict[str, Dict[str, int]]:
        """{channel: {delivered: n, failed: n, skipped: n}} across targets."""
        summary = {
            c.value: {o.value: 0 for o in DeliveryOutcome} for c in ChannelName
        }
        for record in self.records:
            for channel, attempt in record.attempts.items():
                summary[channel.value][attempt.outcome.value] += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "sos_id": self.sos_id,
            "targets": [r.responder_id for r in self.records],
            "channels": self.channel_summary(),
            "records": [r.to_dict() for r in self.records],
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }
