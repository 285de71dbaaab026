"""
responders.py — Responder directory contract + in-memory implementation.

The directory is owned by the (external) user/team service. Triage needs
four lookups from it:

    get_contact(responder_id)          → delivery addresses, team, position
    team_lead_of(responder_id)         → escalation level 1 target
    duty_supervisors()                 → level 1 target for unassigned signals
    available_near(lat, lng, radius)   → escalation level 2 regional pool

Deployments without a directory service load one from a JSON file named by
RESPONDER_DIRECTORY_FILE:

    [
      {"responder_id": "R-7", "name": "Nimal Perera", "email": "nimal@example.org",
       "phone": "+94770000007", "team_lead_id": "L-1",
       "location": {"lat": 6.927, "lng": 79.861}},
      {"responder_id": "SUP-1", "name": "Duty desk", "supervisor": true}
    ]
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaError

from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate, haversine, is_inside_radius

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponderContact:
    """
    A responder as known to the directory.

    Attributes
    ----------
    email, phone, push_token : str | None
        Addresses for the external channels; a missing address means that
        channel is skipped for this responder.
    team_lead_id : str | None
        Responder id of this responder's team lead.
    location : Coordinate | None
        Last known position, used for regional escalation.
    supervisor : bool
        On the duty-supervisor rota.
    """
    responder_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    team_lead_id: Optional[str] = None
    location: Optional[Coordinate] = None
    available: bool = True
    supervisor: bool = False

    def address_for(self, channel: str) -> Optional[str]:
        return {
            "email": self.email,
            "sms": self.phone,
            "push": self.push_token,
        }.get(channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responder_id": self.responder_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "has_push_token": self.push_token is not None,
            "team_lead_id": self.team_lead_id,
            "location": (
                {"lat": self.location.latitude, "lng": self.location.longitude}
                if self.location else None
            ),
            "available": self.available,
            "supervisor": self.supervisor,
        }


class ResponderDirectory(Protocol):
    def get_contact(self, responder_id: str) -> ResponderContact: ...

    def team_lead_of(self, responder_id: str) -> Optional[str]: ...

    def duty_supervisors(self) -> List[str]: ...

    def available_near(self, lat: float, lng: float, radius_km: float) -> List[str]: ...


class InMemoryResponderDirectory:
    """Dictionary-backed ResponderDirectory."""

    def __init__(self, contacts: Iterable[ResponderContact] = ()):
        self._lock = threading.Lock()
        self._contacts: Dict[str, ResponderContact] = {}
        for contact in contacts:
            self.register(contact)

    def __len__(self) -> int:
        return len(self._contacts)

    def __contains__(self, responder_id: object) -> bool:
        return responder_id in self._contacts

    def register(self, contact: ResponderContact) -> None:
        with self._lock:
            self._contacts[contact.responder_id] = contact

    def get_contact(self, responder_id: str) -> ResponderContact:
        contact = self._contacts.get(responder_id)
        if contact is None:
            raise NotFoundError("Responder", responder_id=responder_id)
        return contact

    def team_lead_of(self, responder_id: str) -> Optional[str]:
        contact = self._contacts.get(responder_id)
        return contact.team_lead_id if contact else None

    def duty_supervisors(self) -> List[str]:
        return sorted(
            c.responder_id for c in self._contacts.values()
            if c.supervisor and c.available
        )

    def available_near(self, lat: float, lng: float, radius_km: float) -> List[str]:
        """Available responders within radius, nearest first."""
        center = Coordinate(lat, lng)
        hits = []
        for c in self._contacts.values():
            if not c.available or c.location is None:
                continue
            if is_inside_radius(center, c.location, radius_km):
                hits.append((haversine(center, c.location), c.responder_id))
        hits.sort()
        logger.debug(
            "%d available responders within %.1f km of (%.4f, %.4f)",
            len(hits), radius_km, lat, lng,
        )
        return [rid for _, rid in hits]


# ═══════════════════════════════════════════════════════════════════════════
# File-backed directory
# ═══════════════════════════════════════════════════════════════════════════

class _PositionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ResponderRecord(BaseModel):
    """One row of a responder directory file."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    responder_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    team_lead_id: Optional[str] = None
    location: Optional[_PositionRecord] = None
    available: bool = True
    supervisor: bool = False

    def to_contact(self) -> ResponderContact:
        return ResponderContact(
            responder_id=self.responder_id,
            name=self.name,
            email=self.email or None,
            phone=self.phone or None,
            push_token=self.push_token or None,
            team_lead_id=self.team_lead_id or None,
            location=(
                Coordinate(self.location.lat, self.location.lng)
                if self.location else None
            ),
            available=self.available,
            supervisor=self.supervisor,
        )


_RECORD_LIST = TypeAdapter(List[ResponderRecord])


def load_directory(path: Union[str, Path]) -> InMemoryResponderDirectory:
    """
    Build an InMemoryResponderDirectory from a JSON list of ResponderRecord rows.

    Raises ValueError on malformed rows or duplicate ids; a missing file
    raises the usual OSError.
    """
    path = Path(path)
    try:
        records = _RECORD_LIST.validate_json(path.read_bytes())
    except SchemaError as exc:
        raise ValueError(f"Invalid responder directory {path}: {exc}") from exc

    counts = Counter(r.responder_id for r in records)
    duplicates = sorted(rid for rid, n in counts.items() if n > 1)
    if duplicates:
        raise ValueError(f"Duplicate responder ids in {path}: {duplicates}")

    directory = InMemoryResponderDirectory(r.to_contact() for r in records)
    for record in records:
        if record.team_lead_id and record.team_lead_id not in directory:
            logger.warning(
                "Responder %s names unknown team lead %s",
                record.responder_id, record.team_lead_id,
                extra={"responder_id": record.responder_id},
            )
    logger.info(
        "Loaded %d responders (%d supervisors) from %s",
        len(directory), len(directory.duty_supervisors()), path,
    )
    return directory
