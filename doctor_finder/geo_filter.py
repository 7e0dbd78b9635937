"""Radius search over postal areas: which postal codes does a search circle touch?

Two phases, cheapest first:
  1. Reject every area polygon whose bounding box misses the circle's
     approximate bounding box.
  2. Run the exact polygon/circle intersection only on the survivors.

Without polygon data the filter degrades to plain point-radius inclusion
on each postal code's stored centre point.
"""

import json
import logging
import math
import time
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from shapely.geometry import Point
from shapely.ops import transform

from .models import PostalAreaPolygon, PostalCodeHit, PostalCodePoint
from .postal_codes import fsa_of, normalize_code

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0

# Property names tried, in order, for an area's code in boundary files
_CODE_COLUMNS = ("fsa", "CFSAUID", "code", "FSA")

BBox = Tuple[float, float, float, float]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in km (unrounded)."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance rounded to one decimal, as shown to users."""
    return round(haversine_km(lat1, lng1, lat2, lng2), 1)


def circle_bbox(lat: float, lng: float, radius_km: float) -> BBox:
    """Approximate (min_lng, min_lat, max_lng, max_lat) box around a search circle."""
    d_lat = radius_km / KM_PER_DEGREE_LAT
    # Meridians converge towards the poles; guard the cos() near 90 degrees
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lng = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return (lng - d_lng, lat - d_lat, lng + d_lng, lat + d_lat)


def bbox_overlaps(a: BBox, b: BBox) -> bool:
    return not (a[2] < b[0] or b[2] < a[0] or a[3] < b[1] or b[3] < a[1])


def polygon_intersects_circle(geometry, lat: float, lng: float, radius_km: float) -> bool:
    """Exact test in a local km plane centred on the search point."""
    cos_lat = math.cos(math.radians(lat))

    def to_local_km(x, y, z=None):
        if hasattr(x, "__len__"):
            xs = [(xi - lng) * KM_PER_DEGREE_LAT * cos_lat for xi in x]
            ys = [(yi - lat) * KM_PER_DEGREE_LAT for yi in y]
            return xs, ys
        return (x - lng) * KM_PER_DEGREE_LAT * cos_lat, (y - lat) * KM_PER_DEGREE_LAT

    local = transform(to_local_km, geometry)
    return local.distance(Point(0.0, 0.0)) <= radius_km


def load_area_polygons(path: Path, target_crs: str = "EPSG:4326") -> List[PostalAreaPolygon]:
    """Read postal area boundaries (GeoJSON or shapefile) into immutable polygons."""
    import geopandas as gpd
    from shapely.validation import make_valid

    t0 = time.time()
    gdf = gpd.read_file(path)
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        logger.info(f"Postal areas: fixing {invalid.sum()} invalid geometries")
        gdf.loc[invalid, "geometry"] = gdf.loc[invalid, "geometry"].apply(make_valid)
    if gdf.crs and str(gdf.crs) != target_crs:
        gdf = gdf.to_crs(target_crs)

    code_col = next((c for c in _CODE_COLUMNS if c in gdf.columns), None)
    if code_col is None:
        raise ValueError(f"No postal area code column in {path} (tried {', '.join(_CODE_COLUMNS)})")

    polygons = []
    for _, row in gdf.iterrows():
        geom = row.geometry
        code = normalize_code(str(row.get(code_col) or ""))
        if geom is None or geom.is_empty or not code:
            continue
        polygons.append(PostalAreaPolygon(code=code[:3], geometry=geom, bbox=tuple(geom.bounds)))

    logger.info(f"Postal areas: {len(polygons)} polygons loaded in {time.time() - t0:.1f}s")
    return polygons


def load_postal_points(path: Path) -> List[PostalCodePoint]:
    """Read postal code centre points: {"postalCodes": [{"code", "lat", "lng", "fsa"?}, ...]}."""
    with open(path) as f:
        data = json.load(f)
    rows = data.get("postalCodes", []) if isinstance(data, dict) else data

    points = []
    for row in rows:
        try:
            code = str(row["code"]).strip().upper()
            points.append(PostalCodePoint(
                code=code,
                lat=float(row["lat"]),
                lng=float(row["lng"]),
                fsa=normalize_code(row.get("fsa") or fsa_of(code))[:3],
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping postal code row {row!r}: {e}")
    logger.info(f"Postal codes: {len(points)} centre points loaded from {path}")
    return points


class GeoContainmentFilter:
    """Turns a centre point and radius into the postal codes worth querying."""

    def __init__(self, points: Iterable[PostalCodePoint],
                 polygons: Optional[Iterable[PostalAreaPolygon]] = None):
        self.points: List[PostalCodePoint] = list(points)
        self.polygons: List[PostalAreaPolygon] = list(polygons or [])

    @classmethod
    def from_files(cls, postal_codes_file: Path, boundaries_file: Optional[Path] = None,
                   target_crs: str = "EPSG:4326") -> "GeoContainmentFilter":
        points: List[PostalCodePoint] = []
        if postal_codes_file and Path(postal_codes_file).exists():
            points = load_postal_points(postal_codes_file)
        else:
            logger.warning(f"Postal code file not found: {postal_codes_file}")

        polygons: List[PostalAreaPolygon] = []
        if boundaries_file and Path(boundaries_file).exists():
            try:
                polygons = load_area_polygons(boundaries_file, target_crs)
            except Exception as e:
                logger.error(f"Failed to load postal area boundaries: {e}")
        else:
            logger.warning(f"Postal area boundaries not found: {boundaries_file}, "
                           f"using point-radius fallback")
        return cls(points, polygons)

    @property
    def polygon_mode(self) -> bool:
        return bool(self.polygons)

    def areas_in_radius(self, lat: float, lng: float, radius_km: float) -> Set[str]:
        """Area codes whose polygon intersects the search circle."""
        box = circle_bbox(lat, lng, radius_km)
        candidates = [p for p in self.polygons if bbox_overlaps(p.bbox, box)]

        areas = set()
        for polygon in candidates:
            try:
                if polygon_intersects_circle(polygon.geometry, lat, lng, radius_km):
                    areas.add(polygon.code)
            except Exception as e:
                logger.warning(f"Skipping geometry {polygon.code}: {e}")
        logger.debug(f"Containment: {len(candidates)}/{len(self.polygons)} bbox candidates, "
                     f"{len(areas)} intersect")
        return areas

    def postal_codes_in_radius(self, lat: float, lng: float, radius_km: float) -> List[PostalCodeHit]:
        """Postal code points relevant to the circle, nearest first."""
        if self.polygon_mode:
            areas = self.areas_in_radius(lat, lng, radius_km)
            selected = [p for p in self.points if p.fsa in areas]
        else:
            selected = [p for p in self.points
                        if haversine_km(lat, lng, p.lat, p.lng) <= radius_km]

        hits = [
            PostalCodeHit(code=p.code, lat=p.lat, lng=p.lng, fsa=p.fsa,
                          distance_km=distance_km(lat, lng, p.lat, p.lng))
            for p in selected
        ]
        hits.sort(key=lambda h: h.distance_km)
        return hits
