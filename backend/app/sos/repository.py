"""
repository.py — SignalRepository contract + in-memory reference store.

The durable store is an external collaborator; this module fixes the
contract the triage engines rely on and ships a thread-safe in-memory
implementation used by the app and the test-suite.

═══════════════════════════════════════════════════════════════════════════
CONDITIONAL UPDATE (optimistic concurrency)
═══════════════════════════════════════════════════════════════════════════

    caller                         repository
    ──────                         ──────────
    s = get(id)          ───►      returns record, version = v
    ... decide ...
    conditional_update(id, v, mutation)
                         ───►      lock
                                   stored.version == v ?
                                     yes → apply mutation to a copy,
                                           version = v + 1,
                                           check invariants, store
                                     no  → ConflictError(current version)
                                   unlock

The mutation runs while the record is locked; it must only touch the
record it is given (no I/O, no notifications).

═══════════════════════════════════════════════════════════════════════════
BOUNDARY CONVERSION
═══════════════════════════════════════════════════════════════════════════

Records are stored as plain documents (dicts, as a document store would
hold them). signal_to_document validates on the way in and
signal_from_document validates on the way out, so callers only ever see
strict SosSignal values.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol

from backend.app.core.errors import ConflictError, NotFoundError, ValidationError
from backend.app.sos.models import (
    EmergencyType,
    Location,
    Priority,
    SignalNote,
    SignalStatus,
    SosSignal,
    check_invariants,
    utcnow,
)

logger = logging.getLogger(__name__)

Mutation = Callable[[SosSignal], None]


# ═══════════════════════════════════════════════════════════════════════════
# Query Filter
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SignalFilter:
    """Filter predicate for ``find``. ``None`` fields match everything."""
    statuses: Optional[FrozenSet[SignalStatus]] = None
    priorities: Optional[FrozenSet[Priority]] = None
    created_after: Optional[datetime] = None   # inclusive
    created_before: Optional[datetime] = None  # exclusive
    assigned_responder: Optional[str] = None

    def matches(self, signal: SosSignal) -> bool:
        if self.statuses is not None and signal.status not in self.statuses:
            return False
        if self.priorities is not None and signal.priority not in self.priorities:
            return False
        if self.created_after is not None and signal.created_at < self.created_after:
            return False
        if self.created_before is not None and signal.created_at >= self.created_before:
            return False
        if (
            self.assigned_responder is not None
            and signal.assigned_responder != self.assigned_responder
        ):
            return False
        return True


class SignalRepository(Protocol):
    """Durable store of SOS signals."""

    def get(self, sos_id: str) -> SosSignal: ...

    def find(self, flt: Optional[SignalFilter] = None) -> List[SosSignal]: ...

    def insert(self, signal: SosSignal) -> SosSignal: ...

    def conditional_update(
        self, sos_id: str, expected_version: int, mutation: Mutation,
    ) -> SosSignal: ...


# ═══════════════════════════════════════════════════════════════════════════
# Document Conversion
# ═══════════════════════════════════════════════════════════════════════════

def _require_datetime(value: Any, name: str, *, optional: bool = False) -> Optional[datetime]:
    if value is None and optional:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"{name} is not an ISO-8601 timestamp", field=name) from None
    if not isinstance(value, datetime) or value.tzinfo is None:
        raise ValidationError(f"{name} must be a timezone-aware datetime", field=name)
    return value


def signal_to_document(signal: SosSignal) -> Dict[str, Any]:
    """Validate a SosSignal and convert it to a storable document."""
    if not signal.reporter_id:
        raise ValidationError("reporter_id is required", field="reporter_id")
    if not signal.message or not signal.message.strip():
        raise ValidationError("message is required", field="message")
    if not isinstance(signal.location, Location):
        raise ValidationError("location is required", field="location")
    return {
        "_id": signal.id,
        "reporter_id": signal.reporter_id,
        "location": {
            "lat": signal.location.lat,
            "lng": signal.location.lng,
            "address": signal.location.address,
        },
        "message": signal.message,
        "emergency_type": EmergencyType.parse(signal.emergency_type).value,
        "priority": Priority.parse(signal.priority).label,
        "reported_priority": Priority.parse(signal.reported_priority).label,
        "status": SignalStatus.parse(signal.status).value,
        "escalation_level": int(signal.escalation_level),
        "assigned_responder": signal.assigned_responder,
        "created_at": _require_datetime(signal.created_at, "created_at"),
        "updated_at": _require_datetime(signal.updated_at, "updated_at"),
        "response_time": _require_datetime(signal.response_time, "response_time", optional=True),
        "resolution_time": _require_datetime(
            signal.resolution_time, "resolution_time", optional=True,
        ),
        "auto_escalated_at": _require_datetime(
            signal.auto_escalated_at, "auto_escalated_at", optional=True,
        ),
        "notes": [
            {"author_id": n.author_id, "text": n.text, "timestamp": n.timestamp}
            for n in signal.notes
        ],
        "version": int(signal.version),
        "last_request": signal.last_request,
    }


def signal_from_document(doc: Dict[str, Any]) -> SosSignal:
    """Validate a stored document and convert it back to a SosSignal."""
    try:
        loc = doc["location"]
        location = Location(lat=loc["lat"], lng=loc["lng"], address=loc.get("address"))
        priority = Priority.parse(doc.get("priority", "medium"))
        level = doc.get("escalation_level", 0)
        if not isinstance(level, int) or level < 0:
            raise ValidationError("escalation_level must be a non-negative integer",
                                  field="escalation_level")
        return SosSignal(
            id=str(doc["_id"]),
            reporter_id=str(doc["reporter_id"]),
            location=location,
            message=str(doc["message"]),
            emergency_type=EmergencyType.parse(doc.get("emergency_type", "other")),
            priority=priority,
            reported_priority=Priority.parse(doc.get("reported_priority", priority)),
            status=SignalStatus.parse(doc.get("status", "pending")),
            escalation_level=level,
            assigned_responder=doc.get("assigned_responder"),
            created_at=_require_datetime(doc["created_at"], "created_at"),
            updated_at=_require_datetime(doc["updated_at"], "updated_at"),
            response_time=_require_datetime(doc.get("response_time"), "response_time",
                                            optional=True),
            resolution_time=_require_datetime(doc.get("resolution_time"), "resolution_time",
                                              optional=True),
            auto_escalated_at=_require_datetime(doc.get("auto_escalated_at"),
                                                "auto_escalated_at", optional=True),
            notes=[
                SignalNote(
                    author_id=str(n["author_id"]),
                    text=str(n["text"]),
                    timestamp=_require_datetime(n["timestamp"], "notes.timestamp"),
                )
                for n in doc.get("notes", [])
            ],
            version=int(doc.get("version", 1)),
            last_request=doc.get("last_request"),
        )
    except KeyError as exc:
        raise ValidationError(f"Stored signal is missing field {exc.args[0]!r}",
                              field=str(exc.args[0])) from None


# ═══════════════════════════════════════════════════════════════════════════
# In-Memory Implementation
# ═══════════════════════════════════════════════════════════════════════════

class InMemorySignalRepository:
    """
    Thread-safe in-memory SignalRepository.

    One lock guards the document map; it is held only for the duration of a
    single read or compare-and-swap, never across caller logic.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_escalation_level: Optional[int] = None,
    ):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._max_escalation_level = max_escalation_level

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)

    def insert(self, signal: SosSignal) -> SosSignal:
        check_invariants(None, signal, max_escalation_level=self._max_escalation_level)
        doc = signal_to_document(signal)
        with self._lock:
            if signal.id in self._docs:
                raise ValidationError(f"SOS signal {signal.id} already exists", field="id")
            self._docs[signal.id] = doc
        logger.debug("Inserted signal %s", signal.id, extra={"sos_id": signal.id})
        return signal_from_document(doc)

    def get(self, sos_id: str) -> SosSignal:
        with self._lock:
            doc = self._docs.get(sos_id)
        if doc is None:
            raise NotFoundError("SOS signal", sos_id=sos_id)
        return signal_from_document(doc)

    def find(self, flt: Optional[SignalFilter] = None) -> List[SosSignal]:
        """Matching signals, newest first."""
        with self._lock:
            docs = list(self._docs.values())
        signals = [signal_from_document(d) for d in docs]
        if flt is not None:
            signals = [s for s in signals if flt.matches(s)]
        signals.sort(key=lambda s: s.created_at, reverse=True)
        return signals

    def conditional_update(
        self,
        sos_id: str,
        expected_version: int,
        mutation: Mutation,
    ) -> SosSignal:
        with self._lock:
            doc = self._docs.get(sos_id)
            if doc is None:
                raise NotFoundError("SOS signal", sos_id=sos_id)
            current = signal_from_document(doc)
            if current.version != expected_version:
                raise ConflictError(
                    sos_id,
                    expected_version=expected_version,
                    current_version=current.version,
                )

            updated = current.copy()
            mutation(updated)
            updated.version = current.version + 1
            updated.updated_at = self._clock()
            check_invariants(
                current, updated, max_escalation_level=self._max_escalation_level,
            )
            new_doc = signal_to_document(updated)
            self._docs[sos_id] = new_doc

        return signal_from_document(new_doc)
