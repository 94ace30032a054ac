from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from pyproj import Geod
from shapely.geometry import LineString, Point, Polygon, box
from shapely.ops import substring

EARTH_RADIUS_M = 6_371_000.0
# Simple equatorial approximation: 1 degree ~ 111.32 km. The store only knows degrees.
METERS_PER_DEGREE = 111_320.0

_GEOD = Geod(ellps="WGS84")


def meters_to_degrees(meters: float) -> float:
    return float(meters) / METERS_PER_DEGREE


def degrees_to_meters(degrees: float) -> float:
    return float(degrees) * METERS_PER_DEGREE


def is_valid_lat_lon(lat: float, lon: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres on a sphere of radius EARTH_RADIUS_M."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def bounding_box(
    min_latitude: float,
    min_longitude: float,
    max_latitude: float,
    max_longitude: float,
) -> Polygon:
    """Axis-aligned lon/lat rectangle (x = lon, y = lat)."""
    return box(
        min(min_longitude, max_longitude),
        min(min_latitude, max_latitude),
        max(min_longitude, max_longitude),
        max(min_latitude, max_latitude),
    )


def point(lat: float, lon: float) -> Point:
    return Point(float(lon), float(lat))


def _clean_pairs(coordinates: Iterable[Sequence[float]] | None) -> list[tuple[float, float]]:
    out: list[tuple[float, float]] = []
    for pair in coordinates or ():
        if not isinstance(pair, (list, tuple)) or len(pair) < 2:
            continue
        try:
            a = float(pair[0])
            b = float(pair[1])
        except (TypeError, ValueError):
            continue
        if not (math.isfinite(a) and math.isfinite(b)):
            continue
        out.append((a, b))
    return out


def polyline_from_lonlat(coordinates: Iterable[Sequence[float]] | None) -> LineString | None:
    """Build a LineString from [lon, lat] pairs. Fewer than two usable pairs yields None."""
    pairs = _clean_pairs(coordinates)
    if len(pairs) < 2:
        return None
    return LineString(pairs)


def polyline_from_latlon(coordinates: Iterable[Sequence[float]] | None) -> LineString | None:
    """Build a LineString from [lat, lon] pairs (route-section payload order)."""
    pairs = _clean_pairs(coordinates)
    if len(pairs) < 2:
        return None
    return LineString([(lon, lat) for lat, lon in pairs])


def polyline_bbox(line: LineString) -> Polygon:
    min_lon, min_lat, max_lon, max_lat = line.bounds
    return bounding_box(min_lat, min_lon, max_lat, max_lon)


def geodesic_length_m(line: LineString) -> float:
    if line.is_empty or len(line.coords) < 2:
        return 0.0
    return float(abs(_GEOD.geometry_length(line)))


def distance_along_polyline_m(line: LineString, location: Point) -> float:
    """Metres from the start of ``line`` to the projection of ``location`` onto it."""
    if line.is_empty or len(line.coords) < 2:
        return 0.0
    offset = float(line.project(location))
    if offset <= 0.0:
        return 0.0
    head = substring(line, 0.0, offset)
    if not isinstance(head, LineString):
        return 0.0
    return geodesic_length_m(head)
