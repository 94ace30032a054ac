from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .domain import CorridorKey, PriceOwner, Road, Toll, TollPrice
from .engine_errors import EngineDataError
from .geometry import bounding_box, point, polyline_from_lonlat
from .logging_utils import log_event, log_warning
from .models import (
    BoundingBox,
    ClosestTollsRequest,
    FailureOut,
    HealthResponse,
    IntersectingRoadsRequest,
    PriceBatchRequest,
    PriceBatchResponse,
    PricedEntryOut,
    PriceFact,
    PriceUpsertRequest,
    PriceUpsertResponse,
    RoadIn,
    RoadListResponse,
    RoadMergeRequest,
    RoadMergeResponse,
    RoadOut,
    RoutePricesRequest,
    RoutePricesResponse,
    RouteTollsRequest,
    SearchRadiiRequest,
    SearchRadiiResponse,
    TollListResponse,
    TollMatchOut,
    TollMatchRequest,
    TollMatchResponse,
    TollOut,
    TollPriceOut,
)
from .price_ledger import PriceOwnerRef, batch_upsert_prices, upsert_price
from .road_network import expand_intersecting_roads, merge_road_network, roads_intersecting_polyline
from .route_pricing import RoutePricing, RouteSection, TollEncounter, price_encounters, price_route_sections
from .search_radius import apply_non_overlapping_radii
from .settings import settings
from .store import TollStore
from .toll_matching import TollSearchOptions, find_closest_tolls, find_tolls_near_point, match_facilities


def _initial_store() -> TollStore:
    path = settings.snapshot_path()
    if settings.store_load_snapshot_on_startup and path.exists():
        try:
            return TollStore.load_snapshot(path)
        except EngineDataError as e:
            log_warning("store_snapshot_skipped", path=str(path), reason_code=e.reason_code, detail=e.message)
    return TollStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = _initial_store()
    yield


app = FastAPI(title="Toll Route Pricing Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def toll_store(request: Request) -> TollStore:
    store: TollStore | None = getattr(request.app.state, "store", None)  # type: ignore[attr-defined]
    if store is None:
        raise HTTPException(status_code=503, detail="toll store not initialised")
    return store


StoreDep = Annotated[TollStore, Depends(toll_store)]


def _engine_http_error(e: EngineDataError) -> HTTPException:
    status = 400 if e.reason_code == "invalid_geometry" else 422
    if e.reason_code in {"toll_not_found", "missing_price"}:
        status = 404
    return HTTPException(
        status_code=status,
        detail={"reason_code": e.reason_code, "message": e.message, "details": e.details or {}},
    )


def _bbox(value: BoundingBox):
    return bounding_box(value.min_lat, value.min_lon, value.max_lat, value.max_lon)


def _price_out(price: TollPrice) -> TollPriceOut:
    return TollPriceOut(
        id=price.id,
        amount=price.amount,
        payment_type=price.payment_type,
        axel_type=price.axel_type,
        day_of_week_from=price.day_of_week_from,
        day_of_week_to=price.day_of_week_to,
        time_of_day=price.time_of_day,
        time_from=price.time_from,
        time_to=price.time_to,
        description=price.description,
        is_calculated=price.is_calculated,
    )


def _toll_out(toll: Toll) -> TollOut:
    return TollOut(
        id=toll.id,
        name=toll.name,
        key=toll.key,
        number=toll.number,
        lat=toll.latitude,
        lon=toll.longitude,
        state_calculator_id=toll.state_calculator_id,
        ipass=toll.ipass,
        ipass_overnight=toll.ipass_overnight,
        pay_online=toll.pay_online,
        pay_online_overnight=toll.pay_online_overnight,
        search_radius_m=toll.search_radius_m,
        prices=[_price_out(p) for p in toll.toll_prices],
    )


def _road_in(road: RoadIn) -> Road:
    return Road(
        id=road.id or uuid.uuid4(),
        name=road.name,
        ref=road.ref,
        highway_type=road.highway_type,
        is_toll=road.is_toll,
        geometry=polyline_from_lonlat(road.coordinates),
    )


def _road_out(road: Road) -> RoadOut:
    return RoadOut(
        id=road.id,
        name=road.name,
        ref=road.ref,
        highway_type=road.highway_type,
        is_toll=road.is_toll,
        coordinates=[[x, y] for x, y in road.geometry.coords] if road.geometry is not None else None,
    )


def _pricing_out(result: RoutePricing) -> RoutePricesResponse:
    return RoutePricesResponse(
        entries=[
            PricedEntryOut(
                toll_id=entry.toll_id,
                toll_name=entry.toll_name,
                kind=entry.kind,
                distance=entry.distance,
                from_toll_id=entry.from_toll_id,
                calculate_price_id=entry.calculate_price_id,
                cash=entry.cash,
                transponder=entry.transponder,
                cash_overnight=entry.cash_overnight,
                transponder_overnight=entry.transponder_overnight,
                route_section=entry.route_section,
            )
            for entry in result.entries
        ],
        total_cash=result.total_cash,
        total_transponder=result.total_transponder,
        unpriced_count=result.unpriced_count,
        unknown_toll_ids=result.unknown_toll_ids,
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Toll pricing backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health", response_model=HealthResponse)
async def health(store: StoreDep) -> HealthResponse:
    counts = store.counts()
    return HealthResponse(
        toll_count=counts["tolls"],
        road_count=counts["roads"],
        calculate_price_count=counts["calculate_prices"],
    )


@app.post("/routes/prices", response_model=RoutePricesResponse)
async def route_prices(req: RoutePricesRequest, store: StoreDep) -> RoutePricesResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    encounters = [
        TollEncounter(toll_id=enc.toll_id, distance=enc.distance, route_section=enc.route_section)
        for enc in req.encounters
    ]
    result = price_encounters(store, encounters, axel_type=req.axel_type)
    log_event(
        "route_prices_request",
        request_id=request_id,
        encounter_count=len(encounters),
        entry_count=len(result.entries),
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return _pricing_out(result)


@app.post("/routes/tolls", response_model=RoutePricesResponse)
async def route_tolls(req: RouteTollsRequest, store: StoreDep) -> RoutePricesResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    sections = [RouteSection(coordinates=s.coordinates, route_section=s.route_section) for s in req.sections]
    result = price_route_sections(store, sections, distance_m=req.distance_m, axel_type=req.axel_type)
    log_event(
        "route_tolls_request",
        request_id=request_id,
        section_count=len(sections),
        encounter_count=len(result.encounters),
        entry_count=len(result.entries),
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return _pricing_out(result)


_SEARCH_FIELDS = {
    "name": TollSearchOptions.NAME,
    "key": TollSearchOptions.KEY,
    "number": TollSearchOptions.NUMBER,
}


@app.post("/tolls/match", response_model=TollMatchResponse)
async def match_tolls(req: TollMatchRequest, store: StoreDep) -> TollMatchResponse:
    options = TollSearchOptions(0)
    for name in req.fields or ["name", "key"]:
        options |= _SEARCH_FIELDS[name]
    result = match_facilities(
        req.names,
        _bbox(req.bbox),
        store.tolls(),
        options,
        min_confidence=req.min_confidence,
        spatial=store.spatial,
    )
    return TollMatchResponse(
        matches={
            name: [
                TollMatchOut(toll=_toll_out(toll), confidence=result.confidence[name][toll.id])
                for toll in tolls
            ]
            for name, tolls in result.matches.items()
        },
        not_found=result.not_found,
    )


@app.get("/tolls/nearest", response_model=TollListResponse)
async def nearest_tolls(
    store: StoreDep,
    lat: Annotated[float, Query(ge=-90, le=90)],
    lon: Annotated[float, Query(ge=-180, le=180)],
    radius_km: Annotated[float, Query(gt=0, le=500)] = 1.0,
) -> TollListResponse:
    tolls = find_tolls_near_point(point(lat, lon), radius_km, store.tolls(), spatial=store.spatial)
    return TollListResponse(tolls=[_toll_out(t) for t in tolls])


@app.post("/tolls/closest", response_model=TollListResponse)
async def closest_tolls(req: ClosestTollsRequest, store: StoreDep) -> TollListResponse:
    tolls = find_closest_tolls(
        point(req.lat, req.lon),
        store.tolls(),
        req.radii_m,
        req.max_count,
        spatial=store.spatial,
    )
    return TollListResponse(tolls=[_toll_out(t) for t in tolls])


@app.post("/tolls/search-radii", response_model=SearchRadiiResponse)
async def update_search_radii(req: SearchRadiiRequest, store: StoreDep) -> SearchRadiiResponse:
    with store.transaction():
        tolls = store.tolls_in_region(_bbox(req.bbox)) if req.bbox is not None else store.tolls()
        report = apply_non_overlapping_radii(tolls, req.default_radius_m)
    return SearchRadiiResponse(toll_count=report.toll_count, shrunk_count=report.shrunk_count)


@app.post("/roads/merge", response_model=RoadMergeResponse)
async def merge_roads(req: RoadMergeRequest, store: StoreDep) -> RoadMergeResponse:
    if req.roads is not None:
        fragments = [_road_in(r) for r in req.roads]
        merged = merge_road_network(fragments, req.tolerance_m, spatial=store.spatial)
    else:
        fragments = store.roads_in_bbox(_bbox(req.bbox))  # type: ignore[arg-type]
        merged = merge_road_network(fragments, req.tolerance_m, spatial=store.spatial)
        store.replace_roads([r.id for r in fragments], merged)
    return RoadMergeResponse(input_count=len(fragments), roads=[_road_out(r) for r in merged])


@app.post("/roads/intersecting", response_model=RoadListResponse)
async def intersecting_roads(req: IntersectingRoadsRequest, store: StoreDep) -> RoadListResponse:
    polyline = polyline_from_lonlat(req.coordinates)
    if polyline is None:
        raise _engine_http_error(
            EngineDataError(reason_code="invalid_geometry", message="polyline needs at least two coordinates")
        )
    roads = store.roads()
    if req.expand:
        bbox = _bbox(req.bbox) if req.bbox is not None else None
        found = expand_intersecting_roads(polyline, bbox, roads, spatial=store.spatial)
    else:
        found = roads_intersecting_polyline(req.coordinates, roads, spatial=store.spatial)
    return RoadListResponse(roads=[_road_out(r) for r in found])


@app.post("/prices/upsert", response_model=PriceUpsertResponse)
async def upsert_single_price(req: PriceUpsertRequest, store: StoreDep) -> PriceUpsertResponse:
    try:
        owner = PriceOwner(toll_id=req.toll_id, calculate_price_id=req.calculate_price_id)
        price = upsert_price(store, owner, req.fact)
    except EngineDataError as e:
        raise _engine_http_error(e) from e
    return PriceUpsertResponse(price=_price_out(price))


@app.post("/prices/batch", response_model=PriceBatchResponse)
async def upsert_price_batch(req: PriceBatchRequest, store: StoreDep) -> PriceBatchResponse:
    owner_facts: dict[PriceOwnerRef, list[PriceFact]] = {}
    for item in req.items:
        owner: PriceOwnerRef
        if item.corridor is not None:
            owner = CorridorKey(item.corridor.state_calculator_id, item.corridor.from_id, item.corridor.to_id)
        else:
            owner = PriceOwner.direct(item.toll_id)  # type: ignore[arg-type]
        owner_facts.setdefault(owner, []).extend(item.facts)
    try:
        result = batch_upsert_prices(store, owner_facts)
    except EngineDataError as e:
        raise _engine_http_error(e) from e
    return PriceBatchResponse(
        applied=result.applied,
        skipped=result.skipped,
        failures=[FailureOut(**f.as_dict()) for f in result.failures],
        conflicts=[FailureOut(**f.as_dict()) for f in result.conflicts],
    )


@app.post("/store/snapshot")
async def save_store_snapshot(store: StoreDep) -> dict[str, str]:
    path = store.save_snapshot(settings.snapshot_path())
    return {"path": str(path)}
