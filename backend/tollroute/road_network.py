from __future__ import annotations

import uuid
from collections import defaultdict, deque
from collections.abc import Iterable, Sequence

from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry

from .domain import Road
from .geometry import meters_to_degrees, polyline_bbox, polyline_from_lonlat
from .logging_utils import log_event
from .settings import settings
from .spatial import DEFAULT_SPATIAL_INDEX, SpatialIndex, query_bbox

# Namespace for ids of roads produced by a merge; same members always give the same id.
_MERGE_NAMESPACE = uuid.UUID("6f1c5d0e-3a52-4c8e-9a57-1d0f3b7e2c41")


def _endpoints(line: LineString) -> tuple[Point, Point]:
    coords = list(line.coords)
    return Point(coords[0]), Point(coords[-1])


def _first_non_empty(values: Iterable[str | None]) -> str:
    for value in values:
        if value and value.strip():
            return value
    return ""


def _merged_road_id(members: Sequence[Road], part: int) -> uuid.UUID:
    joined = ",".join(sorted(str(road.id) for road in members))
    return uuid.uuid5(_MERGE_NAMESPACE, f"{joined}:{part}")


def _sort_key(road: Road) -> tuple[str, str]:
    return (road.ref or "", str(road.id))


def _adjacent_components(
    members: Sequence[Road],
    tolerance_deg: float,
    spatial: SpatialIndex,
) -> list[list[Road]]:
    """Connected components of ``members`` where an edge means touching endpoints."""
    ends = [_endpoints(road.geometry) for road in members]  # type: ignore[arg-type]
    n = len(members)
    neighbours: list[list[int]] = [[] for _ in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            if any(
                spatial.within_distance(a, b, tolerance_deg)
                for a in ends[i]
                for b in ends[j]
            ):
                neighbours[i].append(j)
                neighbours[j].append(i)

    visited = [False] * n
    components: list[list[Road]] = []
    for start in range(n):
        if visited[start]:
            continue
        visited[start] = True
        q: deque[int] = deque([start])
        component: list[Road] = []
        while q:
            current = q.popleft()
            component.append(members[current])
            for nxt in neighbours[current]:
                if not visited[nxt]:
                    visited[nxt] = True
                    q.append(nxt)
        components.append(component)
    return components


def _merge_pass(roads: Sequence[Road], tolerance_deg: float, spatial: SpatialIndex) -> list[Road]:
    out: list[Road] = []
    groups: dict[str, list[Road]] = defaultdict(list)
    for road in roads:
        if road.geometry is None or road.geometry.is_empty or not road.ref:
            out.append(road)
            continue
        groups[road.ref].append(road)

    for ref in sorted(groups):
        members = sorted(groups[ref], key=lambda road: str(road.id))
        for component in _adjacent_components(members, tolerance_deg, spatial):
            if len(component) == 1:
                out.append(component[0])
                continue
            lines = spatial.merge_lines([road.geometry for road in component])  # type: ignore[misc]
            if not lines or len(lines) >= len(component):
                # Nothing joined; keep the fragments as they were.
                out.extend(component)
                continue
            name = _first_non_empty(road.name for road in component)
            highway_type = _first_non_empty(road.highway_type for road in component)
            is_toll = any(road.is_toll for road in component)
            for part, line in enumerate(lines):
                out.append(
                    Road(
                        id=_merged_road_id(component, part),
                        name=name,
                        ref=ref,
                        highway_type=highway_type,
                        is_toll=is_toll,
                        geometry=line,
                    )
                )
    out.sort(key=_sort_key)
    return out


def merge_road_network(
    fragments: Iterable[Road],
    tolerance_m: float | None = None,
    *,
    max_passes: int | None = None,
    spatial: SpatialIndex | None = None,
) -> list[Road]:
    """Collapse road fragments that share a ref and touch end to end into whole roads.

    Passes repeat until the road count stops falling (or ``max_passes`` is hit), so
    chains that only connect after an earlier merge are also joined. Output is
    sorted by (ref, id) and does not depend on input order.
    """
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    tolerance_deg = meters_to_degrees(
        settings.road_merge_tolerance_m if tolerance_m is None else float(tolerance_m)
    )
    limit = max(1, int(max_passes if max_passes is not None else settings.road_merge_max_passes))

    current = sorted(fragments, key=_sort_key)
    input_count = len(current)
    passes = 0
    while passes < limit:
        passes += 1
        merged = _merge_pass(current, tolerance_deg, spatial)
        reduced = len(merged) < len(current)
        current = merged
        if not reduced:
            break

    log_event(
        "road_network_merged",
        input_count=input_count,
        output_count=len(current),
        passes=passes,
        tolerance_deg=round(tolerance_deg, 10),
    )
    return current


def expand_intersecting_roads(
    polyline: LineString,
    bbox: Polygon | None,
    roads: Sequence[Road],
    *,
    spatial: SpatialIndex | None = None,
) -> list[Road]:
    """Roads in ``bbox`` connected through intersections to a road crossing ``polyline``."""
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    if bbox is None:
        bbox = polyline_bbox(polyline)

    candidates = query_bbox([road.geometry for road in roads], bbox)
    if not candidates:
        return []

    included: set[int] = set()
    q: deque[int] = deque()
    for idx in candidates:
        if spatial.intersects(roads[idx].geometry, polyline):  # type: ignore[arg-type]
            included.add(idx)
            q.append(idx)
    seed_count = len(included)

    while q:
        current = q.popleft()
        geom = roads[current].geometry
        for idx in candidates:
            if idx in included:
                continue
            if spatial.intersects(geom, roads[idx].geometry):  # type: ignore[arg-type]
                included.add(idx)
                q.append(idx)

    out: list[Road] = []
    seen: set[uuid.UUID] = set()
    for idx in candidates:
        if idx not in included or roads[idx].id in seen:
            continue
        seen.add(roads[idx].id)
        out.append(roads[idx])
    log_event(
        "roads_expanded",
        candidate_count=len(candidates),
        seed_count=seed_count,
        result_count=len(out),
    )
    return out


def roads_intersecting_polyline(
    coordinates: Sequence[Sequence[float]],
    roads: Sequence[Road],
    *,
    spatial: SpatialIndex | None = None,
) -> list[Road]:
    """Roads crossing a [lon, lat] polyline, without expansion."""
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    polyline = polyline_from_lonlat(coordinates)
    if polyline is None:
        return []
    bbox = polyline_bbox(polyline)
    out: list[Road] = []
    for idx in query_bbox([road.geometry for road in roads], bbox):
        if spatial.intersects(roads[idx].geometry, polyline):  # type: ignore[arg-type]
            out.append(roads[idx])
    return out


def _nearest_ref_road(
    road: Road,
    ref_roads: Sequence[Road],
    max_distance_deg: float,
    spatial: SpatialIndex,
) -> Road | None:
    best: tuple[float, str, Road] | None = None
    for end in _endpoints(road.geometry):  # type: ignore[arg-type]
        for other in ref_roads:
            geom: BaseGeometry = other.geometry  # type: ignore[assignment]
            if not spatial.within_distance(end, geom, max_distance_deg):
                continue
            candidate = (spatial.distance(end, geom), str(other.id), other)
            if best is None or candidate[:2] < best[:2]:
                best = candidate
    return best[2] if best is not None else None


def fill_missing_refs(
    roads: Sequence[Road],
    max_distance_m: float | None = None,
    *,
    spatial: SpatialIndex | None = None,
) -> int:
    """Give ref-less roads the ref (and name) of the nearest ref-bearing road at either end.

    Runs until a pass changes nothing so refs propagate along chains. Returns the
    number of roads updated.
    """
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    max_distance_deg = meters_to_degrees(
        settings.road_ref_match_distance_m if max_distance_m is None else float(max_distance_m)
    )
    total = 0
    while True:
        ref_roads = [road for road in roads if road.ref and road.geometry is not None]
        missing = sorted(
            (road for road in roads if not road.ref and road.geometry is not None),
            key=lambda road: str(road.id),
        )
        if not ref_roads or not missing:
            break
        updated = 0
        for road in missing:
            nearest = _nearest_ref_road(road, ref_roads, max_distance_deg, spatial)
            if nearest is None:
                continue
            road.ref = nearest.ref
            road.name = nearest.name
            updated += 1
        total += updated
        if updated == 0:
            break
    log_event("road_refs_filled", updated_count=total)
    return total
