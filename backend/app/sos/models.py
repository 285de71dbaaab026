"""
models.py — Data structures for SOS signal triage.

Defines:
    • Priority        — ordered urgency (low < medium < high < critical)
    • SignalStatus    — lifecycle states
    • EmergencyType   — reported emergency category
    • Location        — validated point + optional address
    • SignalNote      — append-only annotation
    • SosSignal       — the signal record itself

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    pending ──► acknowledged ──► responding ──► resolved
       │
       └──────► false_alarm

    resolved / false_alarm are terminal. Escalation is orthogonal: it
    raises escalation_level and never changes status.

Every pair not listed in STATUS_TRANSITIONS is illegal, including
self-transitions and anything leaving a terminal state.

═══════════════════════════════════════════════════════════════════════════
RECORD INVARIANTS (checked by check_invariants on every write)
═══════════════════════════════════════════════════════════════════════════

    escalation_level   never decreases, never exceeds the configured max
    assigned_responder only set while acknowledged / responding / resolved
    resolution_time    set iff status is resolved or false_alarm
    response_time      set once the signal has left pending
    notes              append-only
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from backend.app.core.errors import ValidationError
from backend.app.spatial.radius_utils import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Priority(IntEnum):
    """Signal urgency — integer ordering gives the dominant priority."""
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise ValidationError(
            f"Unrecognized priority {value!r}. "
            f"Must be one of: {[p.label for p in cls]}",
            field="priority",
        )


class SignalStatus(str, Enum):
    PENDING      = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESPONDING   = "responding"
    RESOLVED     = "resolved"
    FALSE_ALARM  = "false_alarm"

    @classmethod
    def parse(cls, value: Any) -> "SignalStatus":
        if isinstance(value, SignalStatus):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unrecognized status {value!r}. "
                f"Must be one of: {[s.value for s in cls]}",
                field="status",
            ) from None


class EmergencyType(str, Enum):
    MEDICAL           = "medical"
    FIRE              = "fire"
    ACCIDENT          = "accident"
    CRIME             = "crime"
    NATURAL_DISASTER  = "natural_disaster"
    BUILDING_COLLAPSE = "building_collapse"
    OTHER             = "other"

    @classmethod
    def parse(cls, value: Any) -> "EmergencyType":
        if isinstance(value, EmergencyType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unrecognized emergency_type {value!r}. "
                f"Must be one of: {[t.value for t in cls]}",
                field="emergency_type",
            ) from None


TERMINAL_STATUSES: FrozenSet[SignalStatus] = frozenset({
    SignalStatus.RESOLVED,
    SignalStatus.FALSE_ALARM,
})

ACTIVE_STATUSES: FrozenSet[SignalStatus] = frozenset(
    s for s in SignalStatus if s not in TERMINAL_STATUSES
)

# Statuses the escalation sweep looks at
ESCALATION_ELIGIBLE: FrozenSet[SignalStatus] = frozenset({
    SignalStatus.PENDING,
    SignalStatus.ACKNOWLEDGED,
})

# Statuses in which assigned_responder may be non-null
ASSIGNED_STATUSES: FrozenSet[SignalStatus] = frozenset({
    SignalStatus.ACKNOWLEDGED,
    SignalStatus.RESPONDING,
    SignalStatus.RESOLVED,
})


# ═══════════════════════════════════════════════════════════════════════════
# Transition Table
# ═══════════════════════════════════════════════════════════════════════════

STATUS_TRANSITIONS: Dict[SignalStatus, FrozenSet[SignalStatus]] = {
    SignalStatus.PENDING: frozenset({
        SignalStatus.ACKNOWLEDGED,
        SignalStatus.FALSE_ALARM,
    }),
    SignalStatus.ACKNOWLEDGED: frozenset({SignalStatus.RESPONDING}),
    SignalStatus.RESPONDING: frozenset({SignalStatus.RESOLVED}),
    SignalStatus.RESOLVED: frozenset(),
    SignalStatus.FALSE_ALARM: frozenset(),
}


def can_transition(current: SignalStatus, new: SignalStatus) -> bool:
    return new in STATUS_TRANSITIONS[current]


def validate_transition(current: SignalStatus, new: SignalStatus) -> None:
    """Raise ValidationError unless current → new is listed in the table."""
    if not can_transition(current, new):
        allowed = sorted(s.value for s in STATUS_TRANSITIONS[current])
        raise ValidationError(
            f"Illegal status transition {current.value} → {new.value}",
            field="status",
            current_status=current.value,
            requested_status=new.value,
            allowed=allowed,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_signal_id() -> str:
    return f"SOS-{uuid.uuid4().hex[:12].upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """Reported position of a signal, validated on construction."""
    lat: float
    lng: float
    address: Optional[str] = None

    def __post_init__(self) -> None:
        for name, value, bound in (("lat", self.lat, 90.0), ("lng", self.lng, 180.0)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(
                    f"Location {name} must be a number, got {value!r}",
                    field=f"location.{name}",
                )
            if value != value or not (-bound <= value <= bound):
                raise ValidationError(
                    f"Location {name} must be in [-{bound:g}, {bound:g}], got {value}",
                    field=f"location.{name}",
                )

    def to_coordinate(self) -> Coordinate:
        return Coordinate(float(self.lat), float(self.lng))

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"lat": self.lat, "lng": self.lng}
        if self.address:
            d["address"] = self.address
        return d


@dataclass(frozen=True)
class SignalNote:
    author_id: str
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author_id": self.author_id,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SosSignal:
    """
    An emergency report and its triage state.

    ``version`` increments on every successful repository write and is the
    value callers pass back as ``expected_version``. ``last_request`` holds
    the fingerprint of the last coordinator request applied, so a retried
    request can be recognised after it already succeeded.
    ``reported_priority`` is the priority given at intake; escalation upgrades
    change ``priority`` but never this, and the escalation thresholds key on it.
    """
    reporter_id: str
    location: Location
    message: str
    emergency_type: EmergencyType = EmergencyType.OTHER
    priority: Priority = Priority.MEDIUM
    id: str = field(default_factory=generate_signal_id)
    status: SignalStatus = SignalStatus.PENDING
    escalation_level: int = 0
    assigned_responder: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    response_time: Optional[datetime] = None
    resolution_time: Optional[datetime] = None
    auto_escalated_at: Optional[datetime] = None
    notes: List[SignalNote] = field(default_factory=list)
    version: int = 1
    last_request: Optional[str] = None
    reported_priority: Optional[Priority] = None

    def __post_init__(self) -> None:
        if self.reported_priority is None:
            self.reported_priority = self.priority

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def add_note(self, author_id: str, text: str, timestamp: datetime) -> SignalNote:
        note = SignalNote(author_id=author_id, text=text, timestamp=timestamp)
        self.notes.append(note)
        return note

    def copy(self) -> "SosSignal":
        """Detached copy; notes list is copied so appends don't leak."""
        return replace(self, notes=list(self.notes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reporter_id": self.reporter_id,
            "location": self.location.to_dict(),
            "message": self.message,
            "emergency_type": self.emergency_type.value,
            "priority": self.priority.label,
            "reported_priority": self.reported_priority.label,
            "status": self.status.value,
            "escalation_level": self.escalation_level,
            "assigned_responder": self.assigned_responder,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "response_time": iso(self.response_time),
            "resolution_time": iso(self.resolution_time),
            "auto_escalated_at": iso(self.auto_escalated_at),
            "notes": [n.to_dict() for n in self.notes],
            "version": self.version,
        }


def check_invariants(
    before: Optional[SosSignal],
    after: SosSignal,
    *,
    max_escalation_level: Optional[int] = None,
) -> None:
    """
    Validate a record about to be written.

    ``before`` is the stored record (None on insert). Raises ValidationError
    naming the first violated rule.
    """
    if after.escalation_level < 0:
        raise ValidationError("escalation_level must be non-negative", field="escalation_level")
    if max_escalation_level is not None and after.escalation_level > max_escalation_level:
        raise ValidationError(
            f"escalation_level {after.escalation_level} exceeds max {max_escalation_level}",
            field="escalation_level",
        )
    if after.assigned_responder and after.status not in ASSIGNED_STATUSES:
        raise ValidationError(
            f"assigned_responder cannot be set while {after.status.value}",
            field="assigned_responder",
        )
    if (after.resolution_time is not None) != (after.status in TERMINAL_STATUSES):
        raise ValidationError(
            "resolution_time must be set exactly when the signal is terminal",
            field="resolution_time",
        )
    if after.status != SignalStatus.PENDING and after.response_time is None:
        raise ValidationError(
            "response_time must be set once a signal leaves pending",
            field="response_time",
        )

    if before is None:
        return

    if after.escalation_level < before.escalation_level:
        raise ValidationError(
            f"escalation_level cannot decrease "
            f"({before.escalation_level} → {after.escalation_level})",
            field="escalation_level",
        )
    if after.status != before.status:
        validate_transition(before.status, after.status)
    if after.notes[: len(before.notes)] != before.notes:
        raise ValidationError("notes are append-only", field="notes")
    if after.reported_priority != before.reported_priority:
        raise ValidationError("reported_priority is immutable", field="reported_priority")
    if after.created_at != before.created_at or after.id != before.id:
        raise ValidationError("id and created_at are immutable", field="id")
