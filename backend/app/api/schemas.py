"""
Pydantic schemas for the SOS triage API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).

Enum-valued fields (priority, status, emergency_type) are accepted as
plain strings and parsed by the domain layer, so an unknown value
produces the same VALIDATION_ERROR body as every other domain rule.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """Where the citizen is, from browser geolocation or manual entry."""
    lat: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[13.0827],
    )
    lng: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[80.2707],
    )
    address: Optional[str] = Field(None, examples=["Anna Salai, Chennai"])


class IntakeRequest(BaseModel):
    """Request body for POST /sos."""
    reporter_id: str = Field(..., min_length=1, examples=["citizen-42"])
    location: LocationInput
    message: str = Field(..., min_length=1, examples=["Water rising fast, two elderly people"])
    emergency_type: str = Field(
        "other",
        description="medical | fire | accident | crime | natural_disaster | building_collapse | other",
        examples=["natural_disaster"],
    )
    priority: str = Field(
        "medium",
        description="low | medium | high | critical",
        examples=["high"],
    )


class AssignRequest(BaseModel):
    """Request body for PUT /sos/{id}/assign."""
    responder_id: str = Field(..., min_length=1, examples=["R-7"])
    notes: Optional[str] = Field(None, examples=["Closest boat team"])
    reassign: bool = Field(
        False,
        description="Allow replacing a different responder or assigning while responding",
    )
    expected_version: Optional[int] = Field(
        None, ge=1,
        description="Version read by the caller; omitted means 'whatever is current'",
        examples=[3],
    )


class StatusRequest(BaseModel):
    """Request body for PUT /sos/{id}/status."""
    status: str = Field(
        ...,
        description="acknowledged | responding | resolved | false_alarm",
        examples=["responding"],
    )
    notes: Optional[str] = Field(None, examples=["Team en route"])
    expected_version: Optional[int] = Field(None, ge=1, examples=[4])


class EscalateRequest(BaseModel):
    """Request body for POST /sos/{id}/escalate."""
    level: int = Field(..., ge=0, examples=[2])
    reason: Optional[str] = Field(None, examples=["No response from assigned team"])
    expected_version: Optional[int] = Field(None, ge=1, examples=[5])
