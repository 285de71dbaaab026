"""
radius_utils.py — Great-circle distance helpers for signal clustering
and responder proximity lookups.

Provides:
    - Haversine distance between two (lat, lon) points
    - Point-in-radius check
    - Bounding-box pre-filter for cheap rejection before Haversine

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = Earth's radius, fixed at 6,371 km
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        """Latitude in radians."""
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        """Longitude in radians."""
        return math.radians(self.longitude)


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Compute the great-circle distance between two points using the
    Haversine formula.

    Returns
    -------
    float
        Distance in kilometers (unrounded, so radius comparisons are exact).

    Examples
    --------
    >>> round(haversine(Coordinate(6.927, 79.861), Coordinate(6.930, 79.865)), 3)
    0.553
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Floating error can push a fractionally past 1 for antipodal points
    a = min(1.0, max(0.0, a))

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return EARTH_RADIUS_KM * c


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before expensive Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Compute a lat/lon bounding box that fully contains the circle defined
    by (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Longitude delta depends on latitude (shrinks toward poles)
    lat_rad = math.radians(center.latitude)
    if math.cos(lat_rad) > 1e-10:
        delta_lon = math.degrees(angular / math.cos(lat_rad))
    else:
        delta_lon = 180.0

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon

    return (
        max(min_lat, -90.0),
        min(max_lat, 90.0),
        max(min_lon, -180.0),
        min(max_lon, 180.0),
    )


def inside_bbox(point: Coordinate, bbox: Tuple[float, float, float, float]) -> bool:
    min_lat, max_lat, min_lon, max_lon = bbox
    return (
        min_lat <= point.latitude <= max_lat
        and min_lon <= point.longitude <= max_lon
    )


def is_inside_radius(center: Coordinate, point: Coordinate, radius_km: float) -> bool:
    """
    True if ``point`` lies within ``radius_km`` of ``center`` (inclusive).

    The bounding box is only a shortcut; boxes that wrap the antimeridian
    are clipped, so near ±180° we fall through to Haversine.
    """
    if radius_km < 0:
        raise ValueError(f"radius_km must be non-negative, got {radius_km}")
    bbox = bounding_box(center, radius_km)
    wraps = bbox[2] <= -180.0 or bbox[3] >= 180.0
    if not wraps and not inside_bbox(point, bbox):
        return False
    return haversine(center, point) <= radius_km
