from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from shapely.geometry import LineString, MultiLineString, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import linemerge
from shapely.strtree import STRtree


class SpatialIndex(Protocol):
    """Geospatial predicates the engine relies on. Distances are in degrees."""

    def contains(self, polygon: BaseGeometry, geometry: BaseGeometry) -> bool: ...

    def intersects(self, a: BaseGeometry, b: BaseGeometry) -> bool: ...

    def distance(self, a: BaseGeometry, b: BaseGeometry) -> float: ...

    def within_distance(self, a: BaseGeometry, b: BaseGeometry, degrees: float) -> bool: ...

    def buffer(self, geometry: BaseGeometry, degrees: float) -> Polygon: ...

    def merge_lines(self, lines: Sequence[LineString]) -> list[LineString]: ...


class ShapelySpatialIndex:
    def contains(self, polygon: BaseGeometry, geometry: BaseGeometry) -> bool:
        return bool(polygon.contains(geometry))

    def intersects(self, a: BaseGeometry, b: BaseGeometry) -> bool:
        return bool(a.intersects(b))

    def distance(self, a: BaseGeometry, b: BaseGeometry) -> float:
        return float(a.distance(b))

    def within_distance(self, a: BaseGeometry, b: BaseGeometry, degrees: float) -> bool:
        return float(a.distance(b)) <= float(degrees)

    def buffer(self, geometry: BaseGeometry, degrees: float) -> Polygon:
        return geometry.buffer(float(degrees))

    def merge_lines(self, lines: Sequence[LineString]) -> list[LineString]:
        usable = [line for line in lines if line is not None and not line.is_empty]
        if not usable:
            return []
        if len(usable) == 1:
            return [usable[0]]
        merged = linemerge(MultiLineString([list(line.coords) for line in usable]))
        if isinstance(merged, LineString):
            return [merged]
        if isinstance(merged, MultiLineString):
            return [part for part in merged.geoms if not part.is_empty]
        return []


def query_bbox(geometries: Sequence[BaseGeometry | None], bbox: BaseGeometry) -> list[int]:
    """Indices of the geometries intersecting ``bbox``, ascending. ``None`` entries never match."""
    indexed = [(idx, geom) for idx, geom in enumerate(geometries) if geom is not None and not geom.is_empty]
    if not indexed:
        return []
    tree = STRtree([geom for _, geom in indexed])
    hits = tree.query(bbox, predicate="intersects")
    return sorted(indexed[int(hit)][0] for hit in hits)


DEFAULT_SPATIAL_INDEX: SpatialIndex = ShapelySpatialIndex()
