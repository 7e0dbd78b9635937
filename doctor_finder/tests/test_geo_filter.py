"""Two-phase containment: bounding-box rejection, then exact intersection."""

import json

import pytest
from shapely.geometry import box

from doctor_finder.geo_filter import (
    GeoContainmentFilter,
    bbox_overlaps,
    circle_bbox,
    distance_km,
    haversine_km,
    load_postal_points,
    polygon_intersects_circle,
)
from doctor_finder.models import PostalAreaPolygon, PostalCodePoint

from .conftest import TORONTO

LAT, LNG = TORONTO


def area(code, d_lat0, d_lng0, d_lat1, d_lng1):
    """Rectangle offset from the test centre, in degrees."""
    geom = box(LNG + d_lng0, LAT + d_lat0, LNG + d_lng1, LAT + d_lat1)
    return PostalAreaPolygon(code=code, geometry=geom, bbox=tuple(geom.bounds))


INSIDE = area("AAA", -0.002, -0.002, 0.002, 0.002)
OUTSIDE = area("BBB", 0.09, -0.01, 0.11, 0.01)
STRADDLING = area("CCC", 0.015, -0.005, 0.03, 0.005)
# Bounding boxes overlap but the nearest corner is ~2.45 km away
CORNER = area("EEE", 0.016, 0.021, 0.02, 0.03)


def test_haversine_known_distance():
    # One degree of latitude
    assert haversine_km(43.0, -79.0, 44.0, -79.0) == pytest.approx(111.19, abs=0.01)
    assert distance_km(LAT, LNG, LAT, LNG) == 0.0


def test_circle_bbox_widens_longitude_with_latitude():
    min_lng, min_lat, max_lng, max_lat = circle_bbox(LAT, LNG, 2.0)
    assert max_lat - LAT == pytest.approx(2.0 / 111)
    assert (max_lng - LNG) > (max_lat - LAT)
    assert min_lng < LNG < max_lng and min_lat < LAT < max_lat


def test_bbox_overlap():
    assert bbox_overlaps((0, 0, 1, 1), (0.5, 0.5, 2, 2))
    assert bbox_overlaps((0, 0, 1, 1), (1, 1, 2, 2))
    assert not bbox_overlaps((0, 0, 1, 1), (1.1, 0, 2, 1))


def test_containment_cases():
    assert polygon_intersects_circle(INSIDE.geometry, LAT, LNG, 2.0)
    assert not polygon_intersects_circle(OUTSIDE.geometry, LAT, LNG, 2.0)
    assert polygon_intersects_circle(STRADDLING.geometry, LAT, LNG, 2.0)
    assert not polygon_intersects_circle(CORNER.geometry, LAT, LNG, 2.0)


def test_areas_in_radius():
    geo = GeoContainmentFilter([], [INSIDE, OUTSIDE, STRADDLING, CORNER])
    assert geo.polygon_mode
    assert geo.areas_in_radius(LAT, LNG, 2.0) == {"AAA", "CCC"}


def test_polygon_mode_returns_points_of_intersecting_areas_sorted():
    points = [
        PostalCodePoint(code="CCC 1", lat=LAT + 0.02, lng=LNG, fsa="CCC"),
        PostalCodePoint(code="AAA 1", lat=LAT + 0.001, lng=LNG, fsa="AAA"),
        PostalCodePoint(code="BBB 1", lat=LAT + 0.1, lng=LNG, fsa="BBB"),
    ]
    geo = GeoContainmentFilter(points, [INSIDE, OUTSIDE, STRADDLING])
    hits = geo.postal_codes_in_radius(LAT, LNG, 2.0)
    # Area membership decides, so a point past the radius in a touching area is kept
    assert [h.code for h in hits] == ["AAA 1", "CCC 1"]
    assert hits[0].distance_km == 0.1
    assert hits[1].distance_km == 2.2


def test_point_radius_fallback():
    points = [
        PostalCodePoint(code="M5H 1", lat=LAT + 2.3 / 111, lng=LNG, fsa="M5H"),
        PostalCodePoint(code="M5H 2", lat=LAT + 1.5 / 111, lng=LNG, fsa="M5H"),
    ]
    geo = GeoContainmentFilter(points)
    assert not geo.polygon_mode
    hits = geo.postal_codes_in_radius(LAT, LNG, 2.0)
    assert [h.code for h in hits] == ["M5H 2"]
    assert hits[0].distance_km == 1.5


def test_load_postal_points(tmp_path):
    path = tmp_path / "codes.json"
    path.write_text(json.dumps({"postalCodes": [
        {"code": "m5h 2", "lat": 43.65, "lng": -79.38},
        {"code": "M5J 1", "lat": "43.64", "lng": "-79.38", "fsa": "M5J"},
        {"code": "broken"},
    ]}))
    points = load_postal_points(path)
    assert [(p.code, p.fsa) for p in points] == [("M5H 2", "M5H"), ("M5J 1", "M5J")]


def test_from_files_without_boundaries_uses_fallback(tmp_path):
    path = tmp_path / "codes.json"
    path.write_text(json.dumps({"postalCodes": [{"code": "M5H 2", "lat": LAT, "lng": LNG}]}))
    geo = GeoContainmentFilter.from_files(path, tmp_path / "missing.geojson")
    assert not geo.polygon_mode
    assert len(geo.points) == 1
