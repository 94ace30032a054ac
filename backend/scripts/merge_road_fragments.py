from __future__ import annotations

import argparse
import json
import sys
import uuid
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tollroute.domain import Road  # noqa: E402
from tollroute.geometry import polyline_from_lonlat  # noqa: E402
from tollroute.road_network import fill_missing_refs, merge_road_network  # noqa: E402


def _log(message: str) -> None:
    print(f"[road_merge] {message}", flush=True)


def _is_toll(props: dict[str, Any]) -> bool:
    value = props.get("toll", props.get("is_toll", False))
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"yes", "true", "1"}


def _feature_roads(feature: dict[str, Any]) -> list[Road]:
    geometry = feature.get("geometry") or {}
    props = feature.get("properties") or {}
    kind = geometry.get("type")
    if kind == "LineString":
        parts = [geometry.get("coordinates")]
    elif kind == "MultiLineString":
        parts = list(geometry.get("coordinates") or [])
    else:
        return []

    raw_id = props.get("id", feature.get("id"))
    roads: list[Road] = []
    for idx, coords in enumerate(parts):
        line = polyline_from_lonlat(coords)
        if line is None:
            continue
        try:
            road_id = uuid.UUID(str(raw_id)) if len(parts) == 1 else None
        except ValueError:
            road_id = None
        if road_id is None:
            road_id = uuid.uuid5(uuid.NAMESPACE_URL, f"road:{raw_id}:{idx}:{line.wkt}")
        ref = props.get("ref")
        roads.append(
            Road(
                id=road_id,
                name=str(props.get("name") or ""),
                ref=str(ref).strip() if ref not in (None, "") else None,
                highway_type=str(props.get("highway") or props.get("highway_type") or ""),
                is_toll=_is_toll(props),
                geometry=line,
            )
        )
    return roads


def load_roads(*, source_geojson: Path) -> list[Road]:
    payload = json.loads(source_geojson.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("invalid source geojson payload")
    features = payload.get("features", [])
    if not isinstance(features, list):
        features = []
    roads: list[Road] = []
    for feature in features:
        if isinstance(feature, dict):
            roads.extend(_feature_roads(feature))
    return roads


def _road_feature(road: Road) -> dict[str, Any]:
    return {
        "type": "Feature",
        "properties": {
            "id": str(road.id),
            "name": road.name,
            "ref": road.ref,
            "highway": road.highway_type,
            "toll": "yes" if road.is_toll else "no",
        },
        "geometry": {
            "type": "LineString",
            "coordinates": [[x, y] for x, y in road.geometry.coords] if road.geometry is not None else [],
        },
    }


def merge(
    *,
    source_geojson: Path,
    output_geojson: Path,
    tolerance_m: float | None = None,
    fill_refs: bool = False,
) -> dict[str, int]:
    roads = load_roads(source_geojson=source_geojson)
    _log(f"loaded fragments={len(roads)} source={source_geojson}")
    refs_filled = fill_missing_refs(roads) if fill_refs else 0
    merged = merge_road_network(roads, tolerance_m)
    output_geojson.parent.mkdir(parents=True, exist_ok=True)
    output_geojson.write_text(
        json.dumps({"type": "FeatureCollection", "features": [_road_feature(r) for r in merged]}, indent=2),
        encoding="utf-8",
    )
    _log(f"writing GeoJSON roads={len(merged)} output={output_geojson}")
    return {"input_count": len(roads), "output_count": len(merged), "refs_filled": refs_filled}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Merge fragmented road LineStrings that share a ref.")
    parser.add_argument("--source", type=Path, required=True, help="GeoJSON FeatureCollection of road fragments.")
    parser.add_argument("--output", type=Path, required=True)
    parser.add_argument("--tolerance-m", type=float, default=None)
    parser.add_argument(
        "--fill-refs",
        action="store_true",
        help="Copy refs onto ref-less fragments touching a ref-bearing road before merging.",
    )
    args = parser.parse_args(argv)
    summary = merge(
        source_geojson=args.source,
        output_geojson=args.output,
        tolerance_m=args.tolerance_m,
        fill_refs=args.fill_refs,
    )
    print(f"Wrote {args.output} ({summary['input_count']} -> {summary['output_count']} roads)")


if __name__ == "__main__":
    main()
