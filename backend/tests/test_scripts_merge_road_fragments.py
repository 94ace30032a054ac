from __future__ import annotations

import json
from pathlib import Path

import scripts.merge_road_fragments as merge_road_fragments


def _write_fragments(path: Path) -> None:
    features = [
        {
            "type": "Feature",
            "properties": {"id": "way/1", "name": "Florida's Turnpike", "ref": "FL-91", "highway": "motorway", "toll": "yes"},
            "geometry": {"type": "LineString", "coordinates": [[-80.0, 26.0], [-80.0, 26.001]]},
        },
        {
            "type": "Feature",
            "properties": {"id": "way/2", "ref": "FL-91", "highway": "motorway"},
            "geometry": {"type": "LineString", "coordinates": [[-80.0, 26.001], [-80.0, 26.002]]},
        },
        {
            "type": "Feature",
            "properties": {"id": "way/3"},
            "geometry": {"type": "LineString", "coordinates": [[-80.0, 26.002], [-80.0, 26.003]]},
        },
        {
            "type": "Feature",
            "properties": {"id": "node/9"},
            "geometry": {"type": "Point", "coordinates": [-80.0, 26.0]},
        },
    ]
    path.write_text(json.dumps({"type": "FeatureCollection", "features": features}), encoding="utf-8")


def test_load_roads_skips_non_line_features(tmp_path: Path) -> None:
    source = tmp_path / "fragments.geojson"
    _write_fragments(source)

    roads = merge_road_fragments.load_roads(source_geojson=source)

    assert len(roads) == 3
    assert roads[0].is_toll is True
    assert roads[2].ref is None
    again = merge_road_fragments.load_roads(source_geojson=source)
    assert [r.id for r in again] == [r.id for r in roads]


def test_merge_writes_feature_collection(tmp_path: Path) -> None:
    source = tmp_path / "fragments.geojson"
    output = tmp_path / "out" / "merged.geojson"
    _write_fragments(source)

    summary = merge_road_fragments.merge(source_geojson=source, output_geojson=output)

    assert summary == {"input_count": 3, "output_count": 2, "refs_filled": 0}
    payload = json.loads(output.read_text(encoding="utf-8"))
    refs = sorted(str(f["properties"]["ref"]) for f in payload["features"])
    assert refs == ["FL-91", "None"]


def test_main_with_fill_refs_joins_the_ref_less_tail(tmp_path: Path, capsys) -> None:
    source = tmp_path / "fragments.geojson"
    output = tmp_path / "merged.geojson"
    _write_fragments(source)

    merge_road_fragments.main(["--source", str(source), "--output", str(output), "--fill-refs"])

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert len(payload["features"]) == 1
    feature = payload["features"][0]
    assert feature["properties"]["ref"] == "FL-91"
    assert feature["properties"]["toll"] == "yes"
    assert len(feature["geometry"]["coordinates"]) == 4
    assert "3 -> 1 roads" in capsys.readouterr().out
