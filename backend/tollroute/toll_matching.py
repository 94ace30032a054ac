from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import IntFlag
from uuid import UUID

from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from .domain import Toll
from .geometry import meters_to_degrees, polyline_from_latlon
from .logging_utils import log_event
from .settings import settings
from .spatial import DEFAULT_SPATIAL_INDEX, SpatialIndex


class TollSearchOptions(IntFlag):
    NAME = 1
    KEY = 2
    NUMBER = 4
    NAME_OR_KEY = NAME | KEY
    ALL = NAME | KEY | NUMBER


@dataclass
class MatchResult:
    matches: dict[str, list[Toll]] = field(default_factory=dict)
    not_found: list[str] = field(default_factory=list)
    # name -> toll id -> confidence in [0, 1]
    confidence: dict[str, dict[UUID, float]] = field(default_factory=dict)


def _normalise(value: str | None) -> str:
    return (value or "").strip().lower()


def _is_placeholder(value: str | None) -> bool:
    text = (value or "").strip()
    return not text or set(text) == {"_"}


def _has_identity(toll: Toll) -> bool:
    return not (_is_placeholder(toll.name) and _is_placeholder(toll.key))


def _search_values(toll: Toll, options: TollSearchOptions) -> list[str]:
    values: list[str] = []
    if options & TollSearchOptions.NAME:
        values.append(_normalise(toll.name))
    if options & TollSearchOptions.KEY:
        values.append(_normalise(toll.key))
    if options & TollSearchOptions.NUMBER:
        values.append(_normalise(toll.number))
    return [value for value in values if value]


def match_confidence(query: str, candidate: str) -> float:
    """1.0 for equal strings, shorter/longer length ratio for containment, else 0."""
    a = _normalise(query)
    b = _normalise(candidate)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return min(len(a), len(b)) / max(len(a), len(b))
    return 0.0


def _match_one(
    name: str,
    tolls: Sequence[Toll],
    options: TollSearchOptions,
) -> list[tuple[Toll, float]]:
    query = _normalise(name)
    exact = [
        (toll, 1.0)
        for toll in tolls
        if query in _search_values(toll, options)
    ]
    if exact:
        hits = exact
    else:
        hits = []
        for toll in tolls:
            best = max((match_confidence(query, value) for value in _search_values(toll, options)), default=0.0)
            if best > 0.0:
                hits.append((toll, best))
    return [(toll, score) for toll, score in hits if _has_identity(toll)]


def _unique_names(names: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for name in names:
        if name is None or not str(name).strip():
            continue
        if name in seen:
            continue
        seen.add(name)
        out.append(name)
    return out


def match_names(
    names: Iterable[str],
    candidates: Sequence[Toll],
    options: TollSearchOptions = TollSearchOptions.NAME_OR_KEY,
    *,
    min_confidence: float | None = None,
) -> MatchResult:
    """Match each name against an already loaded candidate list: exact first, then substring."""
    threshold = settings.toll_match_min_confidence if min_confidence is None else float(min_confidence)
    result = MatchResult()
    for name in _unique_names(names):
        hits = [(toll, score) for toll, score in _match_one(name, candidates, options) if score >= threshold]
        if not hits:
            result.not_found.append(name)
            continue
        result.matches[name] = [toll for toll, _ in hits]
        result.confidence[name] = {toll.id: round(score, 6) for toll, score in hits}
    return result


def tolls_in_region(
    region: BaseGeometry,
    tolls: Iterable[Toll],
    *,
    spatial: SpatialIndex | None = None,
) -> list[Toll]:
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    return [
        toll
        for toll in tolls
        if toll.location is not None and spatial.contains(region, toll.location)
    ]


def match_facilities(
    names: Iterable[str],
    region: BaseGeometry,
    tolls: Iterable[Toll],
    options: TollSearchOptions = TollSearchOptions.NAME_OR_KEY,
    *,
    min_confidence: float | None = None,
    spatial: SpatialIndex | None = None,
) -> MatchResult:
    """Resolve free-text facility names to tolls located inside ``region``.

    The region is filtered once for all names. Unmatched names are listed in
    ``not_found``; several tolls for one name are all returned.
    """
    names = list(names)
    candidates = tolls_in_region(region, tolls, spatial=spatial)
    result = match_names(names, candidates, options, min_confidence=min_confidence)
    log_event(
        "toll_names_matched",
        name_count=len(names),
        candidate_count=len(candidates),
        matched_count=len(result.matches),
        not_found_count=len(result.not_found),
        ambiguous_count=sum(1 for hits in result.matches.values() if len(hits) > 1),
    )
    return result


def find_tolls_in_region(
    name: str,
    region: BaseGeometry,
    tolls: Iterable[Toll],
    options: TollSearchOptions = TollSearchOptions.NAME_OR_KEY,
    *,
    spatial: SpatialIndex | None = None,
) -> list[Toll]:
    result = match_facilities([name], region, tolls, options, spatial=spatial)
    return result.matches.get(name, [])


def _tolls_within(
    geometry: BaseGeometry,
    tolls: Iterable[Toll],
    degrees: float,
    spatial: SpatialIndex,
) -> list[Toll]:
    hits: list[tuple[float, str, Toll]] = []
    for toll in tolls:
        location = toll.location
        if location is None:
            continue
        if spatial.within_distance(geometry, location, degrees):
            hits.append((spatial.distance(geometry, location), str(toll.id), toll))
    hits.sort(key=lambda item: (item[0], item[1]))
    return [toll for _, _, toll in hits]


def find_closest_tolls(
    location: Point,
    tolls: Iterable[Toll],
    radii_m: Sequence[float] | None = None,
    max_count: int | None = None,
    *,
    spatial: SpatialIndex | None = None,
) -> list[Toll]:
    """Closest tolls found at the smallest radius that yields anything.

    Radii are tried in increasing order and the search stops at the first radius
    with a hit, so a wider radius is never consulted once a narrower one answered.
    """
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    radii = sorted(float(r) for r in (radii_m or settings.proximity_radii()) if float(r) > 0.0)
    limit = max(1, int(max_count if max_count is not None else settings.toll_proximity_max_count))
    candidates = [toll for toll in tolls if toll.location is not None]
    for radius in radii:
        found = _tolls_within(location, candidates, meters_to_degrees(radius), spatial)
        if found:
            log_event("closest_tolls_found", radius_m=radius, found_count=len(found), returned=min(limit, len(found)))
            return found[:limit]
    log_event("closest_tolls_found", radius_m=radii[-1] if radii else None, found_count=0, returned=0)
    return []


def find_tolls_near_point(
    location: Point,
    radius_km: float,
    tolls: Iterable[Toll],
    *,
    spatial: SpatialIndex | None = None,
) -> list[Toll]:
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    return _tolls_within(location, tolls, meters_to_degrees(float(radius_km) * 1000.0), spatial)


def find_tolls_along_polyline(
    coordinates: Sequence[Sequence[float]],
    tolls: Iterable[Toll],
    distance_m: float | None = None,
    *,
    spatial: SpatialIndex | None = None,
) -> list[Toll]:
    """Tolls within ``distance_m`` of a [lat, lon] polyline, nearest to the line first."""
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    line = polyline_from_latlon(coordinates)
    if line is None:
        return []
    distance = settings.toll_polyline_distance_m if distance_m is None else float(distance_m)
    return _tolls_within(line, tolls, meters_to_degrees(distance), spatial)


def backfill_toll_identity(
    tolls: Iterable[Toll],
    *,
    number: str | None = None,
    state_calculator_id: UUID | None = None,
    update_number_if_different: bool = True,
) -> int:
    """Copy an operator number and/or calculator id onto matched tolls. Returns tolls changed."""
    changed = 0
    for toll in tolls:
        touched = False
        if number and (not toll.number or (update_number_if_different and toll.number != number)):
            toll.number = number
            touched = True
        if state_calculator_id is not None and toll.state_calculator_id != state_calculator_id:
            toll.state_calculator_id = state_calculator_id
            touched = True
        if touched:
            changed += 1
    return changed
