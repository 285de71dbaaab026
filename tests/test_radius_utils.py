"""
test_radius_utils.py — Haversine distance, bounding boxes and radius checks.

Run with:
    pytest tests/test_radius_utils.py -v
"""

from __future__ import annotations

import math

import pytest

from backend.app.spatial.radius_utils import (
    EARTH_RADIUS_KM,
    Coordinate,
    bounding_box,
    haversine,
    inside_bbox,
    is_inside_radius,
)

COLOMBO = Coordinate(6.927, 79.861)
KANDY = Coordinate(7.29, 80.63)


class TestCoordinate:

    @pytest.mark.parametrize("lat,lng", [(90.5, 0), (-91, 0), (0, 180.1), (0, -181)])
    def test_out_of_range_rejected(self, lat, lng):
        with pytest.raises(ValueError):
            Coordinate(lat, lng)

    def test_boundaries_accepted(self):
        assert Coordinate(90, 180).latitude == 90
        assert Coordinate(-90, -180).longitude == -180

    def test_radians(self):
        assert Coordinate(180 / math.pi, 0).lat_rad == pytest.approx(1.0)


class TestHaversine:

    def test_same_point(self):
        assert haversine(COLOMBO, COLOMBO) == 0.0

    def test_one_degree_on_equator(self):
        expected = 2 * math.pi * EARTH_RADIUS_KM / 360
        assert haversine(Coordinate(0, 0), Coordinate(0, 1)) == pytest.approx(expected)

    def test_symmetric(self):
        assert haversine(COLOMBO, KANDY) == haversine(KANDY, COLOMBO)

    def test_colombo_to_kandy(self):
        assert 90 < haversine(COLOMBO, KANDY) < 100

    def test_antipodal_points(self):
        d = haversine(Coordinate(0, 0), Coordinate(0, 180))
        assert d == pytest.approx(math.pi * EARTH_RADIUS_KM)


class TestBoundingBox:

    def test_contains_circle(self):
        min_lat, max_lat, min_lon, max_lon = bounding_box(COLOMBO, 10)
        assert min_lat < COLOMBO.latitude < max_lat
        assert min_lon < COLOMBO.longitude < max_lon
        north = Coordinate(COLOMBO.latitude + math.degrees(10 / EARTH_RADIUS_KM), COLOMBO.longitude)
        assert inside_bbox(north, (min_lat, max_lat, min_lon, max_lon))

    def test_clipped_at_pole(self):
        bbox = bounding_box(Coordinate(89.99, 0), 50)
        assert bbox[1] == 90.0
        assert bbox[2] == -180.0 and bbox[3] == 180.0

    def test_outside_bbox(self):
        assert not inside_bbox(KANDY, bounding_box(COLOMBO, 5))


class TestIsInsideRadius:

    def test_near_point_inside(self):
        assert is_inside_radius(COLOMBO, Coordinate(6.930, 79.865), 1.0)

    def test_far_point_outside(self):
        assert not is_inside_radius(COLOMBO, KANDY, 50)

    def test_inclusive_boundary(self):
        d = haversine(COLOMBO, KANDY)
        assert is_inside_radius(COLOMBO, KANDY, d)

    def test_zero_radius(self):
        assert is_inside_radius(COLOMBO, COLOMBO, 0)
        assert not is_inside_radius(COLOMBO, Coordinate(6.928, 79.861), 0)

    def test_across_antimeridian(self):
        assert is_inside_radius(Coordinate(0, 179.99), Coordinate(0, -179.99), 5)

    def test_negative_radius(self):
        with pytest.raises(ValueError):
            is_inside_radius(COLOMBO, KANDY, -1)
