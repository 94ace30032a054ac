from __future__ import annotations

import uuid
from pathlib import Path

from fastapi.testclient import TestClient
from shapely.geometry import LineString

from tollroute.domain import CalculatePrice, Road, StateCalculator, Toll
from tollroute.main import app, toll_store
from tollroute.settings import settings
from tollroute.store import TollStore


def _store() -> tuple[TollStore, dict[str, Toll], StateCalculator]:
    store = TollStore()
    calculator = store.add_state_calculator(StateCalculator(state_code="FL", name="Florida Turnpike"))
    tolls = {
        "entry": store.add_toll(Toll(name="Golden Glades", latitude=26.0, longitude=-80.0, state_calculator_id=calculator.id)),
        "exit": store.add_toll(Toll(name="Lake Worth", latitude=26.01, longitude=-80.0, state_calculator_id=calculator.id)),
        "bridge": store.add_toll(Toll(name="Rickenbacker", latitude=26.02, longitude=-80.0, pay_online=2.0, ipass=1.75)),
    }
    store.add_calculate_price(
        CalculatePrice(
            state_calculator_id=calculator.id,
            from_id=tolls["entry"].id,
            to_id=tolls["exit"].id,
            cash=3.0,
            ipass=2.5,
        )
    )
    store.add_road(Road(name="Turnpike", ref="FL-91", geometry=LineString([(-80.001, 26.005), (-79.999, 26.005)])))
    return store, tolls, calculator


def _client(monkeypatch, tmp_path: Path, store: TollStore) -> TestClient:
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "store_load_snapshot_on_startup", False)
    app.dependency_overrides[toll_store] = lambda: store
    return TestClient(app)


def test_health_and_route_prices(tmp_path: Path, monkeypatch) -> None:
    store, tolls, _ = _store()
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            health = client.get("/health")
            assert health.status_code == 200
            assert health.json()["toll_count"] == 3

            resp = client.post(
                "/routes/prices",
                json={
                    "encounters": [
                        {"toll_id": str(tolls["bridge"].id), "distance": 12.0},
                        {"toll_id": str(tolls["entry"].id), "distance": 0.0},
                        {"toll_id": str(tolls["exit"].id), "distance": 5.0},
                        {"toll_id": str(uuid.uuid4()), "distance": 7.0},
                    ]
                },
            )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 200
    payload = resp.json()
    assert [e["kind"] for e in payload["entries"]] == ["corridor", "flat"]
    assert payload["entries"][0]["from_toll_id"] == str(tolls["entry"].id)
    assert payload["total_cash"] == 5.0
    assert payload["total_transponder"] == 4.25
    assert len(payload["unknown_toll_ids"]) == 1


def test_route_tolls_locates_and_prices_sections(tmp_path: Path, monkeypatch) -> None:
    store, tolls, _ = _store()
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            resp = client.post(
                "/routes/tolls",
                json={"sections": [{"coordinates": [[25.99, -80.0], [26.03, -80.0]], "route_section": "s1"}]},
            )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 200
    entries = resp.json()["entries"]
    assert [e["toll_id"] for e in entries] == [str(tolls["exit"].id), str(tolls["bridge"].id)]
    assert all(e["route_section"] == "s1" for e in entries)


def test_match_and_proximity_endpoints(tmp_path: Path, monkeypatch) -> None:
    store, tolls, _ = _store()
    bbox = {"min_lat": 25.0, "min_lon": -81.0, "max_lat": 27.0, "max_lon": -79.0}
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            matched = client.post("/tolls/match", json={"names": ["golden", "Nowhere"], "bbox": bbox})
            nearest = client.get("/tolls/nearest", params={"lat": 26.0, "lon": -80.0, "radius_km": 1.2})
            closest = client.post("/tolls/closest", json={"lat": 26.0, "lon": -80.0005})
    finally:
        app.dependency_overrides.clear()

    body = matched.json()
    assert body["not_found"] == ["Nowhere"]
    (hit,) = body["matches"]["golden"]
    assert hit["toll"]["id"] == str(tolls["entry"].id)
    assert 0 < hit["confidence"] < 1
    assert [t["name"] for t in nearest.json()["tolls"]] == ["Golden Glades", "Lake Worth"]
    assert [t["name"] for t in closest.json()["tolls"]] == ["Golden Glades"]


def test_road_endpoints(tmp_path: Path, monkeypatch) -> None:
    store, _, _ = _store()
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            merged = client.post(
                "/roads/merge",
                json={
                    "roads": [
                        {"ref": "I-4", "name": "I-4", "coordinates": [[0.0, 0.0], [0.001, 0.0]]},
                        {"ref": "I-4", "coordinates": [[0.001, 0.0], [0.002, 0.0]]},
                    ]
                },
            )
            crossing = client.post(
                "/roads/intersecting",
                json={"coordinates": [[-80.0005, 26.0], [-79.9995, 26.01]], "expand": False},
            )
            invalid = client.post("/roads/intersecting", json={"coordinates": [[-80.0, 26.0]]})
            missing = client.post("/roads/merge", json={})
    finally:
        app.dependency_overrides.clear()

    assert merged.status_code == 200
    assert merged.json()["input_count"] == 2
    assert len(merged.json()["roads"]) == 1
    assert merged.json()["roads"][0]["name"] == "I-4"
    assert [r["name"] for r in crossing.json()["roads"]] == ["Turnpike"]
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["reason_code"] == "invalid_geometry"
    assert missing.status_code == 422


def test_price_endpoints(tmp_path: Path, monkeypatch) -> None:
    store, tolls, calculator = _store()
    bridge_id = str(tolls["bridge"].id)
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            single = client.post(
                "/prices/upsert",
                json={"toll_id": bridge_id, "fact": {"facility_match_key": "Rickenbacker", "amount": 2.25}},
            )
            both = client.post(
                "/prices/upsert",
                json={
                    "toll_id": bridge_id,
                    "calculate_price_id": str(uuid.uuid4()),
                    "fact": {"facility_match_key": "x", "amount": 1.0},
                },
            )
            unknown = client.post(
                "/prices/upsert",
                json={"toll_id": str(uuid.uuid4()), "fact": {"facility_match_key": "x", "amount": 1.0}},
            )
            batch = client.post(
                "/prices/batch",
                json={
                    "items": [
                        {
                            "corridor": {
                                "state_calculator_id": str(calculator.id),
                                "from_id": str(tolls["exit"].id),
                                "to_id": str(tolls["entry"].id),
                            },
                            "facts": [
                                {"facility_match_key": "Lake Worth", "amount": 3.5},
                                {"facility_match_key": "Lake Worth", "amount": 0.0},
                            ],
                        },
                        {"toll_id": str(uuid.uuid4()), "facts": [{"facility_match_key": "x", "amount": 1.0}]},
                    ]
                },
            )
    finally:
        app.dependency_overrides.clear()

    assert single.status_code == 200
    assert single.json()["price"]["amount"] == 2.25
    assert single.json()["price"]["payment_type"] == "cash"
    assert both.status_code == 422
    assert both.json()["detail"]["reason_code"] == "invalid_price_owner"
    assert unknown.status_code == 404
    assert batch.status_code == 200
    assert batch.json()["applied"] == 1
    assert batch.json()["skipped"] == 1
    assert [f["reason_code"] for f in batch.json()["failures"]] == ["toll_not_found"]
    assert len(store.calculate_prices()) == 2


def test_search_radii_and_snapshot(tmp_path: Path, monkeypatch) -> None:
    store, tolls, _ = _store()
    monkeypatch.setattr(settings, "store_snapshot_path", str(tmp_path / "snap" / "store.json"))
    try:
        with _client(monkeypatch, tmp_path, store) as client:
            radii = client.post("/tolls/search-radii", json={"default_radius_m": 500})
            saved = client.post("/store/snapshot")
    finally:
        app.dependency_overrides.clear()

    assert radii.json() == {"toll_count": 3, "shrunk_count": 0}
    assert all(t.search_radius_m == 500.0 for t in tolls.values())
    assert Path(saved.json()["path"]).exists()


def test_corrupt_snapshot_is_skipped_on_startup(tmp_path: Path, monkeypatch) -> None:
    snapshot = tmp_path / "snap" / "store.json"
    snapshot.parent.mkdir(parents=True)
    snapshot.write_text('{"version": "one", "tolls": [1]}', encoding="utf-8")
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "store_snapshot_path", str(snapshot))
    monkeypatch.setattr(settings, "store_load_snapshot_on_startup", True)
    app.dependency_overrides.clear()

    with TestClient(app) as client:
        health = client.get("/health")

    assert health.status_code == 200
    assert health.json()["toll_count"] == 0
